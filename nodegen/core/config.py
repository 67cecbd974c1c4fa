"""
Configuration and environment variables for the generation API
"""

import os
import logging
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

MIB = 1024 * 1024

# CORS configuration
DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:5173",  # Vite default port
    "http://localhost:5174",  # Vite alternate port
    "http://localhost:3000",  # React default port
    "http://localhost:3001",  # Client port
    "http://127.0.0.1:3000",
    "http://127.0.0.1:3001",
    "http://localhost:8080",  # Common dev port
]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Runtime settings, built once and handed to the engine and adapters."""

    # Kie.ai
    kie_api_key: Optional[str] = None
    kie_base_url: str = "https://api.kie.ai"
    kie_upload_url: str = "https://kieai.redpandaai.co/api/file-base64-upload"

    # fal.ai
    fal_key: Optional[str] = None

    # Replicate
    replicate_api_token: Optional[str] = None

    # S3 / MinIO storage for providers without native uploads
    s3_bucket: str = "generation-inputs"
    aws_region: str = "us-east-1"
    minio_endpoint: Optional[str] = None
    minio_access_key: Optional[str] = None
    minio_secret_key: Optional[str] = None
    minio_secure: bool = False

    # Local media library (relative /library/... inputs are read from here)
    library_dir: Path = Path("library")

    # Job behaviour
    poll_interval: float = 5.0
    max_wait: float = 600.0
    busy_policy: str = "reject"  # "reject" | "supersede"
    http_timeout: float = 60.0
    probe_results: bool = True

    # Media limits
    max_image_dimension: int = 3840
    max_image_bytes: int = 9 * MIB

    allowed_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Load settings from the process environment (and a .env file if present)."""
        load_dotenv(env_file, override=True)

        origins = os.getenv("ALLOWED_ORIGINS")
        return cls(
            kie_api_key=os.getenv("KIE_API_KEY"),
            kie_base_url=os.getenv("KIE_BASE_URL", "https://api.kie.ai"),
            kie_upload_url=os.getenv(
                "KIE_UPLOAD_URL", "https://kieai.redpandaai.co/api/file-base64-upload"
            ),
            fal_key=os.getenv("FAL_KEY") or os.getenv("FAL_API_KEY"),
            replicate_api_token=os.getenv("REPLICATE_API_TOKEN") or os.getenv("REPLICATE_API_KEY"),
            s3_bucket=os.getenv("MINIO_BUCKET") or os.getenv("S3_BUCKET", "generation-inputs"),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            minio_endpoint=os.getenv("MINIO_ENDPOINT"),
            minio_access_key=os.getenv("MINIO_ACCESS_KEY"),
            minio_secret_key=os.getenv("MINIO_SECRET_KEY"),
            minio_secure=_env_bool("MINIO_SECURE", False),
            library_dir=Path(os.getenv("LIBRARY_DIR", "library")),
            poll_interval=float(os.getenv("POLL_INTERVAL", "5")),
            max_wait=float(os.getenv("MAX_WAIT", "600")),
            busy_policy=os.getenv("BUSY_POLICY", "reject").lower(),
            http_timeout=float(os.getenv("HTTP_TIMEOUT", "60")),
            probe_results=_env_bool("PROBE_RESULTS", True),
            allowed_origins=[o.strip() for o in origins.split(",")] if origins else list(DEFAULT_ALLOWED_ORIGINS),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def _key_status(value: Optional[str]) -> str:
    return f"SET (length: {len(value)})" if value else "NOT SET"


def log_config_status(settings: Settings) -> None:
    """Log which credentials are configured, never their values."""
    logger.info("🔧 Generation API environment check:")
    logger.info(f"   KIE_API_KEY: {_key_status(settings.kie_api_key)}")
    logger.info(f"   FAL_KEY: {_key_status(settings.fal_key)}")
    logger.info(f"   REPLICATE_API_TOKEN: {_key_status(settings.replicate_api_token)}")
    logger.info(f"   S3_BUCKET: {settings.s3_bucket} ({'minio' if settings.minio_endpoint else 'aws'})")
    logger.info(f"   LIBRARY_DIR: {settings.library_dir}")
    logger.info(f"   POLL_INTERVAL: {settings.poll_interval}s, MAX_WAIT: {settings.max_wait}s")
    logger.info(f"   BUSY_POLICY: {settings.busy_policy}")
