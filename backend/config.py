import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return str(os.getenv(name, default) or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None or not str(raw_value).strip():
        return default
    try:
        return int(str(raw_value).strip())
    except (TypeError, ValueError):
        return default


class Config:
    APP_ENV = (os.getenv("APP_ENV", "development") or "development").strip().lower()
    LOG_LEVEL = (os.getenv("LOG_LEVEL", "INFO") or "INFO").strip().upper()

    # Session tokens
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=_env_int("JWT_ACCESS_TOKEN_HOURS", 24))
    JWT_TOKEN_LOCATION = ["headers", "cookies"]
    JWT_COOKIE_SECURE = _env_flag("JWT_COOKIE_SECURE")
    JWT_COOKIE_SAMESITE = "Lax"
    JWT_COOKIE_CSRF_PROTECT = True
    BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 12)

    MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017/citadel")

    # Comma-separated; None means "use the environment defaults"
    ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS")
    TRUSTED_PROXY_HOPS = _env_int("TRUSTED_PROXY_HOPS", 1)

    RATE_LIMIT_MAX_REQUESTS = _env_int("RATE_LIMIT_MAX_REQUESTS", 100)
    RATE_LIMIT_WINDOW_MS = _env_int("RATE_LIMIT_WINDOW_MS", 60000)
    RATE_LIMIT_AUTH_MAX = _env_int("RATE_LIMIT_AUTH_MAX", 20)
    RATE_LIMIT_AUTH_WINDOW_MS = _env_int("RATE_LIMIT_AUTH_WINDOW_MS", 60000)
    RATE_LIMIT_UPLOAD_MAX = _env_int("RATE_LIMIT_UPLOAD_MAX", 10)
    RATE_LIMIT_UPLOAD_WINDOW_MS = _env_int("RATE_LIMIT_UPLOAD_WINDOW_MS", 60000)
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")

    MAX_CONTENT_LENGTH = _env_int("MAX_UPLOAD_SIZE_MB", 10) * 1024 * 1024
    CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME", "")
    CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY", "")
    CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET", "")
    CLOUDINARY_FOLDER = os.getenv("CLOUDINARY_FOLDER", "citadel-products")
    ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}
