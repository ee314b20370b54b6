"""
Similarity comparator backed by AWS Rekognition CompareFaces.

The comparator is an opaque capability: it receives two stored images and
returns the best similarity score (0-100). Interpreting the score against the
configured threshold is the caller's job.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from pipeline.errors import ComparatorError

logger = structlog.get_logger()


@dataclass
class ComparisonResult:
    """Outcome of one probe/candidate comparison."""
    similarity: float
    matched: bool
    face_matches: int = 0
    unmatched_faces: int = 0


class SimilarityComparator(ABC):
    """Compares two stored images."""

    @abstractmethod
    async def compare(self, probe_key: str, candidate_key: str, threshold: float) -> ComparisonResult:
        """
        Compare the probe artifact with a candidate artifact.

        Raises:
            ComparatorError: If the comparison could not be performed
        """


class RekognitionComparator(SimilarityComparator):
    """
    AWS Rekognition CompareFaces wrapper.

    Rekognition only reports face matches at or above SimilarityThreshold, so
    the threshold is passed through and the best reported similarity is used.
    """

    # Codes meaning the image itself is unusable (no face, bad format, too big)
    IMAGE_ERROR_CODES = frozenset({
        "InvalidParameterException",
        "InvalidImageFormatException",
        "ImageTooLargeException",
        "InvalidS3ObjectException",
    })

    def __init__(
        self,
        bucket: str,
        aws_client_kwargs: Optional[dict] = None,
        timeout: float = 30.0,
        client=None
    ):
        """
        Initialize Rekognition comparator.

        Args:
            bucket: Bucket holding both artifacts
            aws_client_kwargs: Region and optional explicit credentials
            timeout: Connect and read timeout for CompareFaces
            client: Preconfigured boto3 Rekognition client (tests)
        """
        self.bucket = bucket
        self._client = client
        self._client_kwargs = aws_client_kwargs or {}
        self._config = Config(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": 1, "mode": "standard"}
        )

    @classmethod
    def from_settings(cls, settings) -> "RekognitionComparator":
        return cls(
            bucket=settings.artifact_bucket,
            aws_client_kwargs=settings.aws_client_kwargs(),
            timeout=settings.comparator_timeout,
        )

    @property
    def client(self):
        """Lazily created boto3 Rekognition client."""
        if self._client is None:
            self._client = boto3.client("rekognition", config=self._config, **self._client_kwargs)
            logger.info("Rekognition client initialized")
        return self._client

    async def compare(self, probe_key: str, candidate_key: str, threshold: float) -> ComparisonResult:
        try:
            response = await asyncio.to_thread(
                self.client.compare_faces,
                SourceImage={"S3Object": {"Bucket": self.bucket, "Name": probe_key}},
                TargetImage={"S3Object": {"Bucket": self.bucket, "Name": candidate_key}},
                SimilarityThreshold=float(threshold)
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            if code in self.IMAGE_ERROR_CODES:
                raise ComparatorError(f"Rekognition rejected image ({code}): {e}") from e
            raise ComparatorError(f"Rekognition error ({code}): {e}") from e
        except BotoCoreError as e:
            raise ComparatorError(f"Rekognition error: {e}") from e

        face_matches = response.get("FaceMatches") or []
        unmatched = response.get("UnmatchedFaces") or []
        similarity = max((float(m.get("Similarity", 0.0)) for m in face_matches), default=0.0)

        return ComparisonResult(
            similarity=similarity,
            matched=similarity >= threshold,
            face_matches=len(face_matches),
            unmatched_faces=len(unmatched)
        )
