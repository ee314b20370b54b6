"""
Artifact storage for probe and candidate images.

The comparator reads images from object storage, so every comparison needs
the probe and the candidate stored first. Candidate copies are transient:
TransientResourceManager deletes them on every exit path of the unit of work
that created them.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from pipeline.errors import ArtifactStoreError
from pipeline.models import TransientArtifact
from pipeline.retry import NO_RETRY, RetryPolicy

logger = structlog.get_logger()


class ArtifactStore(ABC):
    """Object storage used by the comparator."""

    bucket: str = ""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "image/jpeg",
                  metadata: Optional[dict] = None) -> None:
        """Store bytes under key."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key. Deleting a missing key is not an error."""

    @abstractmethod
    async def url_for(self, key: str) -> str:
        """A URL external services can fetch the object from."""


class S3ArtifactStore(ArtifactStore):
    """
    S3-backed artifact store.

    boto3 is synchronous; calls run in worker threads.
    """

    def __init__(
        self,
        bucket: str,
        aws_client_kwargs: Optional[dict] = None,
        presign_expiry_seconds: int = 3600,
        timeout: float = 30.0,
        client=None
    ):
        """
        Initialize S3 artifact store.

        Args:
            bucket: Bucket holding probe and candidate images
            aws_client_kwargs: Region and optional explicit credentials
            presign_expiry_seconds: Lifetime of URLs returned by url_for
            timeout: Connect and read timeout for S3 calls
            client: Preconfigured boto3 S3 client (tests)
        """
        self.bucket = bucket
        self.presign_expiry_seconds = presign_expiry_seconds
        self._client = client
        self._client_kwargs = aws_client_kwargs or {}
        self._config = Config(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": 2, "mode": "standard"}
        )

    @classmethod
    def from_settings(cls, settings) -> "S3ArtifactStore":
        return cls(
            bucket=settings.artifact_bucket,
            aws_client_kwargs=settings.aws_client_kwargs(),
            presign_expiry_seconds=settings.presign_expiry_seconds,
            timeout=settings.request_timeout,
        )

    @property
    def client(self):
        """Lazily created boto3 S3 client."""
        if self._client is None:
            self._client = boto3.client("s3", config=self._config, **self._client_kwargs)
            logger.info("S3 client initialized", bucket=self.bucket)
        return self._client

    async def put(self, key: str, data: bytes, content_type: str = "image/jpeg",
                  metadata: Optional[dict] = None) -> None:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={k: str(v) for k, v in (metadata or {}).items()}
            )
        except (ClientError, BotoCoreError) as e:
            raise ArtifactStoreError(f"Failed to upload {key}: {e}") from e
        logger.debug("Artifact uploaded", bucket=self.bucket, key=key, size=len(data))

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise ArtifactStoreError(f"Failed to delete {key}: {e}") from e

    async def url_for(self, key: str) -> str:
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.presign_expiry_seconds
        )


class TransientResourceManager:
    """
    Scoped creation and guaranteed deletion of candidate artifacts.

    Usage:
        async with manager.transient(image_bytes, source_url=url) as artifact:
            await comparator.compare(probe_key, artifact.key)
    """

    def __init__(
        self,
        store: ArtifactStore,
        prefix: str = "temp-results/",
        settle_seconds: float = 0.0,
        retry_policy: RetryPolicy = NO_RETRY
    ):
        self.store = store
        self.prefix = prefix
        self.settle_seconds = settle_seconds
        self.retry_policy = retry_policy

    def key_for(self, process_id: str) -> str:
        return f"{self.prefix}{process_id}.jpg"

    @asynccontextmanager
    async def transient(
        self,
        data: bytes,
        source_url: Optional[str] = None,
        process_id: Optional[str] = None,
        content_type: str = "image/jpeg"
    ) -> AsyncIterator[TransientArtifact]:
        """
        Store data as a transient artifact and delete it when the block exits.

        The delete is attempted even when the upload itself failed, since a
        timed-out upload may still have landed. Delete failures are logged and
        never raised.
        """
        process_id = process_id or str(uuid.uuid4())
        artifact = TransientArtifact(
            key=self.key_for(process_id),
            process_id=process_id,
            source_url=source_url,
            size=len(data)
        )
        try:
            metadata = {"process-id": process_id}
            if source_url:
                metadata["original-url"] = source_url[:1024]
            await self.retry_policy.run(
                lambda: self.store.put(artifact.key, data, content_type=content_type, metadata=metadata),
                label="artifact_put",
                process_id=process_id
            )
            logger.debug("Transient artifact stored", process_id=process_id, key=artifact.key, size=artifact.size)

            if self.settle_seconds > 0:
                await asyncio.sleep(self.settle_seconds)

            yield artifact
        finally:
            await self.release(artifact)

    async def release(self, artifact: TransientArtifact) -> None:
        try:
            await self.store.delete(artifact.key)
            logger.debug("Transient artifact deleted", process_id=artifact.process_id, key=artifact.key)
        except Exception as e:
            logger.warning(
                "Failed to delete transient artifact",
                process_id=artifact.process_id,
                key=artifact.key,
                error=str(e)
            )
