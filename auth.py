# auth.py
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext
from sqlalchemy.orm import Session

import config, models
from database import get_db

logger = logging.getLogger(__name__)

# pbkdf2_sha256 avoids bcrypt backend issues/length limits
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


class AuthError(Exception):
    """Token could not be turned into a principal."""


@dataclass(frozen=True)
class Principal:
    """Authenticated identity bound to a request or an editing connection."""

    user_id: str
    name: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _now():
    return datetime.now(timezone.utc)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password or "", hashed_password)
    except ValueError:
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password or "")


def create_access_token(user: models.User, expires_delta: Optional[timedelta] = None) -> str:
    expire = _now() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {"sub": str(user.id), "name": user.name, "role": user.role, "exp": expire}
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def authenticate_user(db: Session, email: str, password: str) -> Optional[models.User]:
    user = db.query(models.User).filter(models.User.email == email).first()
    if not user or not verify_password(password, user.password_hash):
        return None
    return user


def principal_from_token(db: Session, token: Optional[str]) -> Principal:
    """Decode a bearer token and load the user it names.

    The user row is the identity source; the `name` claim is ignored so a
    renamed user shows up under the current name.
    """
    if not token:
        raise AuthError("missing token")
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.PyJWTError as e:
        raise AuthError(str(e)) from e
    sub = payload.get("sub")
    if sub is None or not str(sub).isdigit():
        raise AuthError("token has no subject")
    user = db.get(models.User, int(sub))
    if user is None:
        raise AuthError("unknown user")
    return Principal(user_id=str(user.id), name=user.name, role=user.role)


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> Principal:
    try:
        return principal_from_token(db, token)
    except AuthError as e:
        logger.info("Rejected bearer token: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_admin(principal: Principal = Depends(get_current_user)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return principal


def ensure_default_admin(db: Session) -> None:
    if not config.DEFAULT_ADMIN_EMAIL or not config.DEFAULT_ADMIN_PASSWORD:
        return
    existing = db.query(models.User).filter(models.User.email == config.DEFAULT_ADMIN_EMAIL).first()
    if existing:
        if existing.role != "admin":
            existing.role = "admin"
            db.commit()
        return
    db.add(
        models.User(
            email=config.DEFAULT_ADMIN_EMAIL,
            name="Default Admin",
            role="admin",
            password_hash=get_password_hash(config.DEFAULT_ADMIN_PASSWORD),
        )
    )
    db.commit()
    logger.info("Created default admin %s", config.DEFAULT_ADMIN_EMAIL)
