"""
Pydantic schemas for API request/response models.

Field names follow the wire format (camelCase).
"""

from typing import Optional

from pydantic import BaseModel, Field


class IdentityMetadataSchema(BaseModel):
    """Optional facts about the probe subject."""
    name: Optional[str] = None
    location: Optional[str] = None
    employer: Optional[str] = None


class InitiateSearchRequest(BaseModel):
    """Schema for starting a search. `image` is base64 (optionally a data URL) or an http(s) URL."""
    image: Optional[str] = None
    identityMetadata: Optional[IdentityMetadataSchema] = None


class InitiateSearchResponse(BaseModel):
    """Schema for an accepted search."""
    requestId: str
    status: str = "processing"


class BatchItem(InitiateSearchRequest):
    """One image of a batch upload."""
    referenceId: Optional[str] = None
    priority: str = "high"


class BatchResponse(BaseModel):
    """Schema for an accepted batch. failedIndexes lists items that were not accepted."""
    requestIds: list[str]
    totalImages: int
    failedIndexes: list[int] = Field(default_factory=list)


class MatchEntry(BaseModel):
    """A confirmed match as shown in the status record."""
    url: str
    similarity: float
    thumbnailUrl: Optional[str] = None
    targetUrl: Optional[str] = None
    title: Optional[str] = None
    matchId: Optional[str] = None


class StatusResponse(BaseModel):
    """Schema for request status."""
    status: str
    progress: int = 0
    matches: list[MatchEntry] = Field(default_factory=list)
    totalProcessed: int = 0
    totalAvailable: int = 0
    failureReason: Optional[str] = None
    timestamp: Optional[str] = None
