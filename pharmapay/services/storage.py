# pharmapay/services/storage.py
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from pharmapay.config import settings
import structlog

logger = structlog.get_logger()

_BUCKET_MISSING_CODES = {"NoSuchBucket"}


class BucketNotFoundError(Exception):
    def __init__(self, bucket: str):
        super().__init__(f"Bucket not found: {bucket}")
        self.bucket = bucket


@dataclass
class StoredObject:
    key: str
    last_modified: datetime
    size: int = 0


def _is_bucket_missing(exc: ClientError) -> bool:
    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    message = str(error.get("Message", "")).lower()
    if code in _BUCKET_MISSING_CODES or "bucket not found" in message:
        return True
    return exc.operation_name == "HeadBucket" and code in ("404", "NotFound")


class ObjectStore:
    """S3-compatible storage with the bucket chosen per call."""

    def __init__(self, client=None, public_url: str = ""):
        self.s3 = client or boto3.client(
            "s3",
            endpoint_url=settings.STORAGE_ENDPOINT_URL,
            aws_access_key_id=settings.STORAGE_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.STORAGE_SECRET_ACCESS_KEY or None,
            config=Config(signature_version="s3v4"),
            region_name=settings.STORAGE_REGION,
        )
        self.public_url = (public_url or settings.STORAGE_PUBLIC_URL).rstrip("/")

    def upload(
        self,
        bucket: str,
        key: str,
        file_bytes: bytes,
        content_type: str = "application/pdf",
        overwrite: bool = False,
    ) -> str:
        params = {
            "Bucket": bucket,
            "Key": key,
            "Body": file_bytes,
            "ContentType": content_type,
        }
        if not overwrite:
            params["IfNoneMatch"] = "*"
        try:
            self.s3.put_object(**params)
        except ClientError as e:
            if _is_bucket_missing(e):
                raise BucketNotFoundError(bucket) from e
            raise
        logger.info("object_uploaded", bucket=bucket, key=key, size=len(file_bytes))
        return key

    def get_public_url(self, bucket: str, key: str) -> str:
        return f"{self.public_url}/storage/v1/object/public/{bucket}/{quote(key)}"

    def create_signed_url(self, bucket: str, key: str, expires_in: int = 3600) -> str:
        try:
            self.s3.head_bucket(Bucket=bucket)
            self.s3.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if _is_bucket_missing(e):
                raise BucketNotFoundError(bucket) from e
            raise
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def remove(self, bucket: str, keys: list[str]):
        try:
            self.s3.delete_objects(
                Bucket=bucket,
                Delete={"Objects": [{"Key": k} for k in keys], "Quiet": True},
            )
        except ClientError as e:
            if _is_bucket_missing(e):
                raise BucketNotFoundError(bucket) from e
            raise
        logger.info("objects_removed", bucket=bucket, keys=keys)

    def list_objects(self, bucket: str, prefix: str = "") -> list[StoredObject]:
        objects: list[StoredObject] = []
        try:
            paginator = self.s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    modified = item["LastModified"]
                    if modified.tzinfo is not None:
                        modified = modified.astimezone(timezone.utc).replace(tzinfo=None)
                    objects.append(
                        StoredObject(key=item["Key"], last_modified=modified, size=item.get("Size", 0))
                    )
        except ClientError as e:
            if _is_bucket_missing(e):
                raise BucketNotFoundError(bucket) from e
            raise
        return objects


@lru_cache()
def get_object_store() -> ObjectStore:
    return ObjectStore()
