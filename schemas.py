# schemas.py
from pydantic import BaseModel, Field
from typing import Optional, List, Literal, Dict, Any
from datetime import datetime


class UserCreate(BaseModel):
    email: str
    name: str
    password: str = Field(min_length=6)
    role: Literal["user", "admin"] = "user"

    model_config = {"from_attributes": True}


class UserOut(BaseModel):
    id: int
    email: str
    name: str
    role: str

    model_config = {"from_attributes": True}


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut


class ArticleCreate(BaseModel):
    title: str = Field(min_length=1)
    content: str
    summary: str = ""
    category: str = "general"
    status: Literal["draft", "published"] = "draft"

    model_config = {"from_attributes": True}


class ArticleUpdate(BaseModel):
    # partial update: only fields that are sent are written
    title: Optional[str] = Field(default=None, min_length=1)
    content: Optional[str] = None
    summary: Optional[str] = None
    category: Optional[str] = None
    status: Optional[Literal["draft", "published"]] = None


class ArticleOut(BaseModel):
    id: int
    title: str
    summary: str
    content: str
    category: str
    status: str
    author_id: int
    author_name: Optional[str]
    view_count: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AdCreate(BaseModel):
    title: str = Field(min_length=1)
    image_url: str
    link_url: str
    status: Literal["active", "inactive"] = "active"
    placement: Literal["in-feed", "sidebar"] = "in-feed"


class AdUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    image_url: Optional[str] = None
    link_url: Optional[str] = None
    status: Optional[Literal["active", "inactive"]] = None
    placement: Optional[Literal["in-feed", "sidebar"]] = None


class AdOut(BaseModel):
    id: int
    title: str
    image_url: str
    link_url: str
    status: str
    placement: str
    impressions: int
    clicks: int
    created_at: datetime

    model_config = {"from_attributes": True}


class FeedEntryOut(BaseModel):
    type: Literal["article", "ad"]
    lead: bool
    data: Dict[str, Any]


class FeedOut(BaseModel):
    items: List[FeedEntryOut]


class EditLockOut(BaseModel):
    articleId: str
    userId: str
    userName: str


class LockMessage(BaseModel):
    """Envelope of every message on the editing channel."""

    type: Literal[
        "initial_locks",
        "start_editing",
        "stop_editing",
        "editing_conflict",
    ]
    payload: Dict[str, Any]

    model_config = {"extra": "forbid"}
