"""Visual match pipeline: request lifecycle, batching and status tracking."""

from pipeline.errors import (
    ArtifactStoreError,
    ComparatorError,
    ComparisonAbortedError,
    PipelineError,
    ProbeError,
    ProviderError,
    StatusTransitionError,
)
from pipeline.models import Candidate, IdentityMetadata, Match, SearchRequest, SearchState, SearchStatus

__all__ = [
    "ArtifactStoreError",
    "ComparatorError",
    "ComparisonAbortedError",
    "PipelineError",
    "ProbeError",
    "ProviderError",
    "StatusTransitionError",
    "Candidate",
    "IdentityMetadata",
    "Match",
    "SearchRequest",
    "SearchState",
    "SearchStatus",
]
