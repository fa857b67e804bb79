# models.py
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from database import Base


def _utcnow():
    return datetime.utcnow()


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    # "user" or "admin"; only admins may join the editing channel
    role = Column(String, nullable=False, default="user")
    password_hash = Column(String, nullable=False)

    def __repr__(self):
        return f"<User {self.email}>"


class Article(Base):
    __tablename__ = "articles"
    __table_args__ = {"extend_existing": True}

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    summary = Column(Text, nullable=False, default="")
    content = Column(Text, nullable=False)
    category = Column(String, nullable=False, default="general", index=True)
    status = Column(String, nullable=False, default="draft", index=True)
    author_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    view_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    author = relationship("User", foreign_keys=[author_id], lazy="joined")

    @property
    def author_name(self):
        return self.author.name if self.author else None


class Advertisement(Base):
    __tablename__ = "advertisements"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    image_url = Column(String, nullable=False)
    link_url = Column(String, nullable=False)
    # "active" / "inactive"
    status = Column(String, nullable=False, default="active", index=True)
    # "in-feed" / "sidebar"
    placement = Column(String, nullable=False, default="in-feed", index=True)
    impressions = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
