import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent / ".env"
load_dotenv(dotenv_path=env_path)

INSECURE_DEV_SECRET = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    mongo_url: str = "mongodb://localhost:27017"
    database_name: str = "service_sphere"

    jwt_secret: str = INSECURE_DEV_SECRET
    jwt_algorithm: str = "HS256"
    jwt_expire_days: int = 30
    bcrypt_rounds: int = 12

    # "local" serves files from upload_dir, "s3" talks to an S3-compatible bucket
    media_backend: str = "local"
    upload_dir: str = "uploads"
    s3_endpoint_url: Optional[str] = None
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    s3_bucket_name: str = "service-sphere"
    s3_region: str = "auto"
    s3_public_base_url: Optional[str] = None
    upload_signature_expires: int = 3600
    max_upload_bytes: int = 10 * 1024 * 1024

    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"


def load_settings() -> Settings:
    jwt_secret = os.getenv("JWT_SECRET")
    if not jwt_secret:
        warnings.warn(
            "JWT_SECRET not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
        )
        jwt_secret = INSECURE_DEV_SECRET

    return Settings(
        mongo_url=os.getenv("MONGO_URL", os.getenv("DATABASE_URL", "mongodb://localhost:27017")),
        database_name=os.getenv("DATABASE_NAME", "service_sphere"),
        jwt_secret=jwt_secret,
        jwt_expire_days=int(os.getenv("JWT_EXPIRE_DAYS", "30")),
        bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", "12")),
        media_backend=os.getenv("MEDIA_BACKEND", "local").lower(),
        upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
        s3_endpoint_url=os.getenv("S3_ENDPOINT_URL"),
        s3_access_key_id=os.getenv("S3_ACCESS_KEY_ID"),
        s3_secret_access_key=os.getenv("S3_SECRET_ACCESS_KEY"),
        s3_bucket_name=os.getenv("S3_BUCKET_NAME", "service-sphere"),
        s3_region=os.getenv("S3_REGION", "auto"),
        s3_public_base_url=os.getenv("S3_PUBLIC_BASE_URL"),
        upload_signature_expires=int(os.getenv("UPLOAD_SIGNATURE_EXPIRES", "3600")),
        max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024))),
        allowed_origins=_split(os.getenv("ALLOWED_ORIGINS", "*")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
