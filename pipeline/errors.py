"""Exceptions raised across the visual match pipeline."""


class PipelineError(Exception):
    """Base class for pipeline errors."""


class ProviderError(PipelineError):
    """A search provider was unavailable or returned a malformed response."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ComparatorError(PipelineError):
    """The similarity comparator rejected or failed a comparison."""


class ComparisonAbortedError(PipelineError):
    """Raised instead of skipping a candidate when the failure policy is 'abort'."""


class ArtifactStoreError(PipelineError):
    """Storing or reading an artifact failed."""


class ProbeError(PipelineError):
    """The probe image is missing or could not be normalized."""


class StatusTransitionError(PipelineError):
    """A status write would move a record backward or out of a terminal state."""
