"""
S3/MinIO uploads for providers that have no storage of their own
"""

import asyncio
import logging
import time
import uuid
from io import BytesIO
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from nodegen.core.config import Settings
from nodegen.core.errors import UploadError
from nodegen.core.media import EXTENSION_BY_MIME

logger = logging.getLogger(__name__)

PRESIGNED_EXPIRY_SECONDS = 7 * 24 * 3600


def create_s3_client(settings: Settings):
    """S3 client configured for MinIO when an endpoint is set, else AWS."""
    if settings.minio_endpoint and settings.minio_access_key and settings.minio_secret_key:
        logger.info(f"✅ Using MinIO at {settings.minio_endpoint}")
        return boto3.client(
            "s3",
            endpoint_url=settings.minio_endpoint,
            aws_access_key_id=settings.minio_access_key,
            aws_secret_access_key=settings.minio_secret_key,
            region_name=settings.aws_region,
            use_ssl=settings.minio_secure,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    logger.info(f"✅ Using AWS S3 in region {settings.aws_region}")
    return boto3.client("s3", region_name=settings.aws_region)


class S3Uploader:
    """upload(data, mime_type) -> presigned URL, run off the event loop."""

    def __init__(self, client: Any, bucket: str, prefix: str = "inputs"):
        self.client = client
        self.bucket = bucket
        self.prefix = prefix

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3Uploader":
        return cls(create_s3_client(settings), settings.s3_bucket)

    def _upload_sync(self, data: bytes, mime_type: str, key: str) -> str:
        self.client.upload_fileobj(
            BytesIO(data),
            self.bucket,
            key,
            ExtraArgs={
                "ContentType": mime_type,
                "Metadata": {"upload_time": str(int(time.time()))},
            },
        )
        return self.client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=PRESIGNED_EXPIRY_SECONDS,
        )

    async def upload(self, data: bytes, mime_type: str, name: Optional[str] = None) -> str:
        extension = EXTENSION_BY_MIME.get(mime_type, "bin")
        key = f"{self.prefix}/{int(time.time())}_{name or uuid.uuid4().hex}.{extension}"
        logger.info(f"📤 Uploading {mime_type} ({len(data)} bytes) -> s3://{self.bucket}/{key}")
        try:
            return await asyncio.to_thread(self._upload_sync, data, mime_type, key)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"❌ Error uploading to s3://{self.bucket}/{key}: {e}")
            raise UploadError(f"Upload to s3://{self.bucket} failed: {e}")
