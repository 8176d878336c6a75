"""S3-compatible object storage for campaign proof files."""

import asyncio
import logging
from datetime import datetime, timezone

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from marketplace.core.config import settings
from marketplace.core.errors import UpstreamError

logger = logging.getLogger(__name__)


def build_proof_key(
    creator_id: int, campaign_id: int, filename: str, now: datetime | None = None,
) -> str:
    """Namespace by creator, campaign and a millisecond timestamp to avoid collisions."""
    now = now or datetime.now(timezone.utc)
    stamp = int(now.timestamp() * 1000)
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    return f"{creator_id}/{campaign_id}/{stamp}.{ext}"


class ProofStorage:
    """Uploads proof evidence and resolves its public URL."""

    def __init__(self) -> None:
        self.bucket = settings.storage_bucket
        self.public_endpoint = (
            settings.storage_public_endpoint or settings.storage_endpoint
        ).rstrip("/")
        self._client = None

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=settings.storage_endpoint,
                aws_access_key_id=settings.storage_access_key,
                aws_secret_access_key=settings.storage_secret_key,
                config=Config(signature_version="s3v4"),
                region_name=settings.storage_region,
            )
        return self._client

    def public_url(self, key: str) -> str:
        return f"{self.public_endpoint}/{self.bucket}/{key}"

    def _put(self, key: str, body: bytes, content_type: str) -> None:
        self._get_client().put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
        )

    async def upload(self, key: str, body: bytes, content_type: str) -> str:
        """Upload bytes under ``key`` and return the public URL."""
        try:
            await asyncio.to_thread(self._put, key, body, content_type)
        except (BotoCoreError, ClientError) as exc:
            logger.exception("Proof upload failed for key=%s", key)
            raise UpstreamError("Could not store proof file") from exc
        logger.info("Stored proof file", extra={"key": key, "size": len(body)})
        return self.public_url(key)
