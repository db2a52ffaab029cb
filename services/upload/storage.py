"""
services/upload/storage.py
S3 object storage for listing images. Works against AWS or any
S3-compatible endpoint (localstack/MinIO) via S3_ENDPOINT_URL.
"""

import logging
import uuid
from functools import lru_cache
from typing import Optional

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from config.settings import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the object store rejects or cannot complete an operation."""


class S3Storage:
    def __init__(self, client=None, bucket: Optional[str] = None):
        self.endpoint_url = settings.S3_ENDPOINT_URL.rstrip("/") or None
        self.bucket = bucket or settings.S3_BUCKET_NAME
        self.client = client or boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
            region_name=settings.AWS_REGION,
            config=BotoConfig(
                signature_version="s3v4",
                # Custom endpoints rarely support virtual-hosted buckets
                s3={"addressing_style": "path" if self.endpoint_url else "auto"},
            ),
        )

    def public_url(self, key: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def upload_file(self, content: bytes, filename: str, content_type: str, folder: str) -> dict:
        """Store bytes under {folder}/{uuid4}.{ext}, publicly readable. Returns {url, key}."""
        ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
        key = f"{folder}/{uuid.uuid4()}.{ext}"
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=content_type,
                ACL="public-read",
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 upload of {key} failed: {e}")
            raise StorageError(f"Failed to upload file: {e}") from e

        logger.info(f"Uploaded {key} ({len(content)} bytes)")
        return {"url": self.public_url(key), "key": key}

    def delete_file(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 delete of {key} failed: {e}")
            raise StorageError(f"Failed to delete file: {e}") from e

    def get_signed_url(self, key: str, expires_in: int = 3600) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Presigning {key} failed: {e}")
            raise StorageError(f"Failed to sign URL: {e}") from e


@lru_cache()
def get_storage() -> S3Storage:
    """FastAPI dependency: process-wide storage client."""
    return S3Storage()
