# config.py
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./newsroom.db")

JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "1440"))

DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@example.com")
DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "admin123")

# 0 disables expiry: a lock lives until released or its holder disconnects
LOCK_TTL_SECONDS = int(os.getenv("LOCK_TTL_SECONDS", "0"))

FEED_FIRST_AD_SLOT = int(os.getenv("FEED_FIRST_AD_SLOT", "2"))
FEED_AD_INTERVAL = int(os.getenv("FEED_AD_INTERVAL", "5"))
FEED_DEFAULT_LIMIT = int(os.getenv("FEED_DEFAULT_LIMIT", "20"))

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
