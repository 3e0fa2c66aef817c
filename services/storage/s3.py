"""S3 object storage — presigned GET URLs for recordings, put/delete for outputs."""

from loguru import logger

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config.errors import UpstreamError, ValidationError
from services.storage.download import download_url


def parse_s3_uri(uri: str) -> tuple[str, str]:
    """Split s3://bucket/key into (bucket, key)."""
    uri = uri.strip()
    if not uri.startswith("s3://") or len(uri) < 8:
        raise ValidationError(f"Invalid S3 URI: {uri}")
    bucket, _, key = uri[5:].partition("/")
    if not key:
        raise ValidationError(f"Invalid S3 key: {uri}")
    return bucket, key


class S3ObjectStorage:
    """Storage paths are keys inside one bucket."""

    def __init__(self, bucket: str, client=None):
        self.bucket = bucket
        self._client = client or boto3.client("s3")

    def signed_url(self, path: str, ttl_sec: int = 3600) -> str:
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=ttl_sec,
            )
        except (BotoCoreError, ClientError) as e:
            raise UpstreamError(f"Failed to create signed URL: {e}") from e

    def download(self, url: str, timeout: float = 600.0) -> bytes:
        return download_url(url, timeout=timeout)

    def upload(self, path: str, data: bytes, content_type: str = "audio/mpeg") -> None:
        try:
            self._client.put_object(Bucket=self.bucket, Key=path, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            raise UpstreamError(f"Failed to upload {path}: {e}") from e
        logger.debug(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{path}")

    def remove(self, path: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=path)
        except (BotoCoreError, ClientError) as e:
            raise UpstreamError(f"Failed to remove {path}: {e}") from e
