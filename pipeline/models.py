"""Domain records for one visual match request: request, candidates, matches, status."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


def utc_now_iso() -> str:
    """Current UTC time as ISO 8601 with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_id() -> str:
    return str(uuid.uuid4())


class SearchState(str, Enum):
    """Lifecycle state stored in the status record."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not SearchState.PROCESSING


class PipelineStage(str, Enum):
    """Orchestrator stages, logged on every transition."""
    CREATED = "created"
    SEARCHING_PROBE = "searching_probe"
    NORMALIZING = "normalizing"
    AWAITING_PROVIDERS = "awaiting_providers"
    BATCHING = "batching"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class IdentityMetadata:
    """Optional facts about the probe subject, used to build text queries."""
    name: Optional[str] = None
    location: Optional[str] = None
    employer: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["IdentityMetadata"]:
        if not data:
            return None
        return cls(
            name=(data.get("name") or "").strip() or None,
            location=(data.get("location") or "").strip() or None,
            employer=(data.get("employer") or "").strip() or None,
        )

    def to_dict(self) -> dict:
        return {"name": self.name, "location": self.location, "employer": self.employer}


ImageSource = Union[bytes, str]


@dataclass(frozen=True)
class SearchRequest:
    """
    One run of the pipeline.

    `image` is raw bytes, a base64 payload (optionally a data: URL) or an
    http(s) URL. Immutable once created.
    """
    request_id: str
    image: Optional[ImageSource]
    identity: Optional[IdentityMetadata] = None
    created_at: str = field(default_factory=utc_now_iso)
    reference_id: Optional[Any] = None
    priority: str = "high"

    @classmethod
    def create(
        cls,
        image: Optional[ImageSource],
        identity: Optional[IdentityMetadata] = None,
        reference_id: Optional[Any] = None,
        priority: Optional[str] = None,
    ) -> "SearchRequest":
        return cls(
            request_id=new_id(),
            image=image,
            identity=identity,
            reference_id=reference_id,
            priority=priority or "high",
        )

    @property
    def has_probe(self) -> bool:
        if self.image is None:
            return False
        if isinstance(self.image, str):
            return bool(self.image.strip())
        return True


@dataclass
class Candidate:
    """A discovered (host page, image) pair that may show the probe subject."""
    source: str
    host_page_url: Optional[str]
    target_url: str
    candidate_id: str = field(default_factory=new_id)
    search_terms: list[str] = field(default_factory=list)
    thumbnail_url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(frozen=True)
class Match:
    """A candidate confirmed above the similarity threshold."""
    request_id: str
    candidate_id: str
    host_page_url: Optional[str]
    target_url: str
    similarity: float
    thumbnail_url: Optional[str] = None
    match_id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def from_candidate(cls, request_id: str, candidate: Candidate, similarity: float) -> "Match":
        return cls(
            request_id=request_id,
            candidate_id=candidate.candidate_id,
            host_page_url=candidate.host_page_url,
            target_url=candidate.target_url,
            thumbnail_url=candidate.thumbnail_url or candidate.target_url,
            similarity=similarity,
        )

    def to_status_entry(self) -> dict:
        """Shape stored in the status record and returned by the status endpoint."""
        return {
            "matchId": self.match_id,
            "title": f"Match ({round(self.similarity)}% similar)",
            "url": self.host_page_url or self.target_url,
            "targetUrl": self.target_url,
            "thumbnailUrl": self.thumbnail_url,
            "similarity": self.similarity,
        }

    def to_record(self) -> dict:
        """Row persisted in the append-only matches table."""
        return {
            "resultId": self.match_id,
            "imageId": self.request_id,
            "candidateId": self.candidate_id,
            "hostPageUrl": self.host_page_url,
            "targetUrl": self.target_url,
            "thumbnailUrl": self.thumbnail_url,
            "similarity": self.similarity,
            "timestamp": self.created_at,
        }


@dataclass(frozen=True)
class TransientArtifact:
    """Short-lived stored copy of a normalized candidate image."""
    key: str
    process_id: str
    source_url: Optional[str] = None
    size: int = 0


@dataclass
class SearchStatus:
    """Durable status record, keyed by request id."""
    request_id: str
    status: SearchState = SearchState.PROCESSING
    progress: int = 0
    matches: list[dict] = field(default_factory=list)
    total_processed: int = 0
    total_available: int = 0
    failure_reason: Optional[str] = None
    version: int = 0
    timestamp: str = field(default_factory=utc_now_iso)

    @classmethod
    def from_record(cls, request_id: str, record: dict) -> "SearchStatus":
        """Build from a stored record; absent fields read as their zero value."""
        return cls(
            request_id=request_id,
            status=SearchState(record.get("status") or SearchState.PROCESSING.value),
            progress=int(record.get("progress") or 0),
            matches=list(record.get("matches") or []),
            total_processed=int(record.get("totalProcessed") or 0),
            total_available=int(record.get("totalAvailable") or 0),
            failure_reason=record.get("failureReason"),
            version=int(record.get("version") or 0),
            timestamp=record.get("timestamp") or "",
        )

    def to_record(self) -> dict:
        record = {
            "requestId": self.request_id,
            "status": self.status.value,
            "progress": self.progress,
            "matches": list(self.matches),
            "totalProcessed": self.total_processed,
            "totalAvailable": self.total_available,
            "version": self.version,
            "timestamp": self.timestamp,
        }
        if self.failure_reason:
            record["failureReason"] = self.failure_reason
        return record


@dataclass
class StatusUpdate:
    """
    Partial update of a status record.

    Only fields that are not None are written. `append_matches` is appended to
    the stored match list, never replacing it.
    """
    status: Optional[SearchState] = None
    progress: Optional[int] = None
    total_processed: Optional[int] = None
    total_available: Optional[int] = None
    append_matches: list[dict] = field(default_factory=list)
    replace_matches: Optional[list[dict]] = None
    failure_reason: Optional[str] = None
