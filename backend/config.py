import os
from datetime import timedelta
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

SESSION_COOKIE_NAME = "token"
SESSION_LIFETIME = timedelta(days=365)


def env_flag(name: str, default: bool = False) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def allowed_origins() -> List[str]:
    origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        os.getenv("CLIENT_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                origins.append(trimmed)
    return [origin for origin in origins if origin]


def load_config() -> Dict[str, object]:
    """Read the process environment into Flask config keys."""
    environment = (
        os.getenv("APP_ENV") or os.getenv("NODE_ENV") or "development"
    ).strip().lower()
    production = environment == "production"

    try:
        max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "16"))
    except ValueError:
        max_upload_mb = 16

    return {
        "APP_ENV": environment,
        "MONGO_URI": os.getenv("MONGO_URI")
        or os.getenv("MONGODB_URI")
        or "mongodb://localhost:27017/ztech",
        "MONGO_DBNAME": os.getenv("MONGO_DBNAME", "ztech"),
        "MONGO_TRANSACTIONS": env_flag("MONGO_TRANSACTIONS"),
        "JWT_SECRET_KEY": os.getenv("ACCESS_TOKEN_SECRET")
        or os.getenv("JWT_SECRET_KEY")
        or "change-me-in-production",
        "JWT_ACCESS_TOKEN_EXPIRES": SESSION_LIFETIME,
        "JWT_TOKEN_LOCATION": ["cookies"],
        "JWT_ACCESS_COOKIE_NAME": SESSION_COOKIE_NAME,
        "JWT_SESSION_COOKIE": False,
        # SameSite carries the CSRF defence for the session cookie.
        "JWT_COOKIE_CSRF_PROTECT": False,
        "JWT_COOKIE_SECURE": production,
        "JWT_COOKIE_SAMESITE": "None" if production else "Strict",
        "CORS_ORIGINS": allowed_origins(),
        "CLOUDINARY_CLOUD_NAME": os.getenv("CLOUDINARY_CLOUD_NAME", "").strip(),
        "CLOUDINARY_API_KEY": os.getenv("CLOUDINARY_API_KEY", "").strip(),
        "CLOUDINARY_API_SECRET": os.getenv("CLOUDINARY_API_SECRET", "").strip(),
        "CLOUDINARY_FOLDER": os.getenv("CLOUDINARY_FOLDER", "products").strip()
        or "products",
        "UPLOAD_ALLOWED_EXTENSIONS": {"png", "jpg", "jpeg", "gif", "webp"},
        "MAX_CONTENT_LENGTH": max_upload_mb * 1024 * 1024,
        "DEFAULT_ADMIN_EMAIL": os.getenv("DEFAULT_ADMIN_EMAIL", "").strip().lower(),
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    }
