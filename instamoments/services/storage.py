"""Object storage for uploaded media: S3 when a bucket is configured, local disk otherwise."""

import logging
import os
from typing import Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from instamoments.core.errors import StorageError

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    def put(self, data: bytes, key: str, content_type: str = "application/octet-stream") -> str:
        """Store `data` under `key` and return the ref to persist."""

    def delete(self, ref: str) -> bool:
        """Remove the object; False (never an exception) if it could not be removed."""

    def url(self, ref: Optional[str]) -> Optional[str]:
        ...


class S3StorageService:
    """Handles media uploads to AWS S3."""

    def __init__(
        self,
        region: str,
        bucket: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        url_expiration: int = 3600,
        client=None,
    ):
        """
        Args:
            region: AWS region
            bucket: S3 bucket name
            access_key: AWS access key (optional; uses IAM role on EC2)
            secret_key: AWS secret key (optional; uses IAM role on EC2)
            url_expiration: presigned URL validity in seconds
            client: preconfigured boto3 S3 client (tests)
        """
        self.bucket = bucket
        self.region = region
        self.url_expiration = url_expiration
        self.client = client or boto3.client(
            "s3",
            region_name=region or None,
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
        )
        logger.info("S3 storage initialized for bucket '%s' in region '%s'", bucket, region)

    def put(self, data: bytes, key: str, content_type: str = "application/octet-stream") -> str:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                ServerSideEncryption="AES256",
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("S3 upload failed for %s: %s", key, e)
            raise StorageError(f"Failed to upload {key}") from e
        logger.info("Uploaded to S3: s3://%s/%s", self.bucket, key)
        return key

    def delete(self, ref: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=ref)
        except (ClientError, BotoCoreError) as e:
            logger.error("S3 delete failed for %s: %s", ref, e)
            return False
        logger.info("Deleted from S3: s3://%s/%s", self.bucket, ref)
        return True

    def url(self, ref: Optional[str]) -> Optional[str]:
        if not ref:
            return None
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": ref},
                ExpiresIn=self.url_expiration,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to generate presigned URL for %s: %s", ref, e)
            return None


class LocalStorageService:
    """Filesystem fallback; files are served from `public_prefix`."""

    def __init__(self, root: str = "storage", public_prefix: str = "/storage"):
        self.root = root
        self.public_prefix = public_prefix.rstrip("/")

    def _path(self, ref: str) -> str:
        rel = os.path.normpath(ref.replace("\\", "/")).lstrip("/")
        if rel.startswith(".."):
            raise StorageError(f"Invalid storage key {ref!r}")
        return os.path.join(self.root, rel)

    def put(self, data: bytes, key: str, content_type: str = "application/octet-stream") -> str:
        path = self._path(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            tmp = path + ".tmp"
            with open(tmp, "wb") as fh:
                fh.write(data)
            os.replace(tmp, path)
        except OSError as e:
            logger.error("Local write failed for %s: %s", key, e)
            raise StorageError(f"Failed to store {key}") from e
        return key

    def delete(self, ref: str) -> bool:
        try:
            os.remove(self._path(ref))
        except FileNotFoundError:
            return True
        except (OSError, StorageError) as e:
            logger.error("Local delete failed for %s: %s", ref, e)
            return False
        return True

    def exists(self, ref: str) -> bool:
        return os.path.exists(self._path(ref))

    def url(self, ref: Optional[str]) -> Optional[str]:
        if not ref:
            return None
        return f"{self.public_prefix}/{ref.lstrip('/')}"


def build_storage(settings) -> ObjectStorage:
    if getattr(settings, "S3_UPLOADS_BUCKET", ""):
        return S3StorageService(
            region=settings.AWS_REGION,
            bucket=settings.S3_UPLOADS_BUCKET,
            access_key=getattr(settings, "AWS_ACCESS_KEY_ID", None),
            secret_key=getattr(settings, "AWS_SECRET_ACCESS_KEY", None),
        )
    logger.info("S3_UPLOADS_BUCKET not configured; using local filesystem")
    return LocalStorageService(root=getattr(settings, "LOCAL_STORAGE_ROOT", "storage"))
