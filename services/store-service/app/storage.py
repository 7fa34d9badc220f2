import logging
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from . import config

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Reused across requests
_s3_client = None


class StorageError(Exception):
    pass


def _client():
    global _s3_client
    import boto3

    if _s3_client is None:
        _s3_client = boto3.client("s3", endpoint_url=config.S3_ENDPOINT_URL)
    return _s3_client


class ObjectStorage:
    """
    Two buckets: private originals (only reachable through signed URLs) and
    public watermarked derivatives.
    """

    def __init__(
        self,
        client=None,
        *,
        originals_bucket: str = config.ORIGINALS_BUCKET,
        watermarked_bucket: str = config.WATERMARKED_BUCKET,
        public_base_url: str = config.PUBLIC_MEDIA_BASE_URL,
    ):
        self._client = client
        self.originals_bucket = originals_bucket
        self.watermarked_bucket = watermarked_bucket
        self.public_base_url = public_base_url.rstrip("/")

    @property
    def client(self):
        if self._client is None:
            self._client = _client()
        return self._client

    def _put(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        try:
            self.client.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            logger.exception("upload failed bucket=%s key=%s", bucket, key)
            raise StorageError(f"upload of {key} failed") from e

    def upload_original(self, key: str, data: bytes, content_type: str) -> None:
        self._put(self.originals_bucket, key, data, content_type)

    def upload_watermarked(self, key: str, data: bytes, content_type: str = "image/jpeg") -> None:
        self._put(self.watermarked_bucket, key, data, content_type)

    def signed_url(self, key: str, expires_in: int) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.originals_bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            logger.exception("could not sign key=%s", key)
            raise StorageError(f"could not sign {key}") from e

    def public_url(self, key: Optional[str]) -> Optional[str]:
        if not key:
            return None
        return f"{self.public_base_url}/{key}"
