import asyncio
import logging
import urllib.parse
from dataclasses import dataclass
from typing import Optional
import boto3
from botocore.exceptions import ClientError
from botocore.client import Config
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from utils.storage import StorageAdapter, StorageObjectNotFound

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"nosuchkey", "404", "notfound"}


@dataclass
class S3Settings:
    bucket: str
    region: str = "us-east-1"
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    endpoint: Optional[str] = None
    force_path_style: bool = False


def normalize_object_key(raw_key: str, bucket: str) -> str:
    """
    Accept plain keys, full object URLs and bucket-prefixed keys.

    https://host/bucket/a/b.pdf → a/b.pdf, /bucket/a/b.pdf → a/b.pdf
    """
    key = raw_key.strip()
    if not key:
        return key
    if key.startswith(("http://", "https://")):
        key = urllib.parse.urlparse(key).path or ""
    key = key.lstrip("/")
    bucket_prefix = f"{bucket}/"
    if key.startswith(bucket_prefix):
        key = key[len(bucket_prefix):]
    return key


def is_no_such_key_error(error: Exception) -> bool:
    """True for S3's NoSuchKey / 404 family, whatever shape botocore gives it"""
    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", "")).lower()
        if code in NOT_FOUND_CODES:
            return True
    message = str(error).lower()
    return "nosuchkey" in message or "specified key does not exist" in message or "no such key" in message


class S3Storage(StorageAdapter):
    """
    boto3-backed adapter. boto3 is blocking, so calls run in a worker thread.

    A missing key is retried a few times with growing back-off before it is reported:
    uploads that just landed can be briefly invisible on S3-compatible stores.
    """

    def __init__(self, settings: S3Settings, client=None,
                 not_found_attempts: int = 4, not_found_wait_s: float = 0.6):
        self.settings = settings
        self.bucket = settings.bucket
        self.not_found_attempts = max(1, not_found_attempts)
        self.not_found_wait_s = not_found_wait_s
        self._client = client or boto3.client(
            's3',
            region_name=settings.region,
            endpoint_url=settings.endpoint or None,
            aws_access_key_id=settings.access_key_id or None,
            aws_secret_access_key=settings.secret_access_key or None,
            config=Config(
                signature_version='s3v4',
                s3={'addressing_style': 'path' if settings.force_path_style else 'virtual'},
            ),
        )

    def _get_object_bytes(self, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if is_no_such_key_error(e):
                raise StorageObjectNotFound(key, str(e)) from e
            raise
        body = response.get("Body")
        if body is None:
            raise RuntimeError(f"Empty body for key {key}")
        try:
            return body.read()
        finally:
            body.close()

    async def download(self, key: str) -> bytes:
        normalized_key = normalize_object_key(key, self.bucket)
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(StorageObjectNotFound),
            stop=stop_after_attempt(self.not_found_attempts),
            wait=wait_incrementing(start=self.not_found_wait_s, increment=self.not_found_wait_s),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"🔁 Retrying S3 download for {normalized_key} (attempt {attempt.retry_state.attempt_number})")
                return await asyncio.to_thread(self._get_object_bytes, normalized_key)
        raise StorageObjectNotFound(normalized_key)

    async def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        normalized_key = normalize_object_key(key, self.bucket)
        extra = {"ContentType": content_type} if content_type else {}
        await asyncio.to_thread(
            self._client.put_object, Bucket=self.bucket, Key=normalized_key, Body=data, **extra
        )
        logger.debug(f"Uploaded {len(data):,} bytes to s3://{self.bucket}/{normalized_key}")
