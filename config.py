"""
Configuration management for the visual match pipeline.
Loads settings from environment variables (VISUAL_MATCH_*) with sensible defaults.
"""

from __future__ import annotations

import logging
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="VISUAL_MATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "Visual Match"
    app_version: str = "1.0.0"
    log_level: str = "INFO"

    # AWS
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_region: str = "us-east-1"

    # Artifact storage (S3)
    artifact_bucket: str = "infringementuploads"
    probe_prefix: str = "uploads/"
    transient_prefix: str = "temp-results/"
    presign_expiry_seconds: int = 3600
    # Delay between storing a transient artifact and comparing it
    artifact_settle_seconds: float = 0.0

    # Status store
    status_backend: str = "sqlite"  # sqlite | dynamodb
    database_url: str = "sqlite:///data/visual_match.db"
    status_table: str = "SearchStatus"
    matches_table: str = "SearchResults"

    # Search providers
    bing_visual_search_url: str = "https://api.bing.microsoft.com/v7.0/images/visualsearch"
    bing_image_search_url: str = "https://api.bing.microsoft.com/v7.0/images/search"
    bing_api_key: str = ""
    google_api_url: str = "https://www.googleapis.com/customsearch/v1"
    google_api_key: str = ""
    google_cx: str = ""
    provider_page_size: int = 10
    provider_max_pages: int = 5
    max_search_results: int = 50

    # Comparison
    similarity_threshold: float = 98.0
    comparator_failure_policy: str = "skip"  # skip | abort
    batch_width: int = 5

    # Timeouts (seconds)
    request_timeout: float = 30.0
    fetch_timeout: float = 5.0
    comparator_timeout: float = 30.0

    # Image normalization
    max_width: int = 1920
    max_height: int = 1080
    jpeg_quality: int = 85
    fallback_quality: int = 60
    max_image_bytes: int = 5 * 1024 * 1024
    max_download_bytes: int = 15 * 1024 * 1024

    # Retry policy
    retry_max_attempts: int = 3
    retry_backoff_seconds: float = 1.0

    # Downstream notification
    notify_matches_url: str = ""
    notify_cleared_url: str = ""
    notify_secret: str = ""
    notify_secret_header: str = "x-api-key"
    cleared_batch_size: int = 1

    # Dispatch
    dispatch_mode: str = "local"  # local | lambda
    processor_function: str = ""

    # A request whose providers all raised is reported as failed instead of
    # completed-empty when this is set
    all_providers_failed_is_fatal: bool = False

    @property
    def log_level_number(self) -> int:
        """log_level as a logging level number, INFO when unrecognised."""
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO

    @property
    def has_aws_credentials(self) -> bool:
        """True when explicit AWS keys are configured (otherwise the default chain is used)."""
        return bool(self.aws_access_key_id.strip() and self.aws_secret_access_key.strip())

    def aws_client_kwargs(self) -> dict:
        """Keyword arguments for boto3.client(), with explicit keys only when both are set."""
        kwargs = {"region_name": self.aws_region}
        if self.has_aws_credentials:
            kwargs["aws_access_key_id"] = self.aws_access_key_id
            kwargs["aws_secret_access_key"] = self.aws_secret_access_key
        return kwargs

    def validate_settings(self) -> list[str]:
        """Validate settings. Returns list of missing/invalid settings."""
        issues = []

        aws_vars = [self.aws_access_key_id, self.aws_secret_access_key]
        if any(aws_vars) and not all(aws_vars):
            issues.append("AWS credentials partially configured - need both ACCESS_KEY_ID and SECRET_ACCESS_KEY")

        if self.status_backend not in ("sqlite", "dynamodb"):
            issues.append(f"Unknown status backend: {self.status_backend}")

        if self.comparator_failure_policy not in ("skip", "abort"):
            issues.append(f"Unknown comparator failure policy: {self.comparator_failure_policy}")

        if self.dispatch_mode not in ("local", "lambda"):
            issues.append(f"Unknown dispatch mode: {self.dispatch_mode}")

        if self.dispatch_mode == "lambda" and not self.processor_function:
            issues.append("Dispatch mode is 'lambda' but PROCESSOR_FUNCTION is not set")

        if self.batch_width < 1:
            issues.append("BATCH_WIDTH must be at least 1")

        if not 0 <= self.similarity_threshold <= 100:
            issues.append("SIMILARITY_THRESHOLD must be between 0 and 100")

        if not (self.bing_api_key or (self.google_api_key and self.google_cx)):
            issues.append("No search provider configured - set BING_API_KEY or GOOGLE_API_KEY and GOOGLE_CX")

        if bool(self.google_api_key) != bool(self.google_cx):
            issues.append("Google search partially configured - need both GOOGLE_API_KEY and GOOGLE_CX")

        return issues


# Module-level settings instance (lazy load for tests)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return application settings (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
