"""Configuration management for moltguard."""

from __future__ import annotations

from functools import lru_cache
from typing import Self

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_VALID_SOURCE_CLASSES = ("chat", "webhook", "email")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
        env_parse_enums=True,
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Logging Configuration
    log_to_file: bool = Field(default=False, description="Enable file-based logging")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=52428800,  # 50MB
        description="Max size per log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=10, description="Number of rotated log files to keep"
    )
    log_error_file_enabled: bool = Field(
        default=True, description="Enable separate error log file (WARNING+)"
    )
    log_file_prefix: str = Field(default="moltguard", description="Prefix for log file names")

    @property
    def log_file_path(self) -> str:
        """Get the full log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}.log"

    @property
    def error_log_file_path(self) -> str:
        """Get the error log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}_error.log"

    # Payload size caps per source class
    max_chat_bytes: int = Field(
        default=51200,  # 50 KiB
        description="Maximum payload size for chat messages",
    )
    max_webhook_bytes: int = Field(
        default=1048576,  # 1 MiB
        description="Maximum payload size for webhook bodies",
    )
    max_email_bytes: int = Field(
        default=1048576,  # 1 MiB
        description="Maximum payload size for email bodies",
    )
    source_channel_classes_str: str | None = Field(
        default=None,
        alias="SOURCE_CHANNEL_CLASSES",
        description="Channel to source class mapping, e.g. 'webhook=webhook,gmail=email'",
    )

    @property
    def source_channel_classes(self) -> dict[str, str]:
        """Parse the channel-to-class mapping."""
        if self.source_channel_classes_str is None:
            return {}
        mapping: dict[str, str] = {}
        for entry in self.source_channel_classes_str.split(","):
            entry = entry.strip()
            if not entry:
                continue
            channel, _, source_class = entry.partition("=")
            mapping[channel.strip().lower()] = source_class.strip().lower()
        return mapping

    # Decoder and matcher ceilings
    max_decode_depth: int = Field(default=10, description="Maximum nested decoding depth")
    max_decoded_variants: int = Field(
        default=64, description="Maximum decoded variants kept per content unit"
    )
    max_nesting_depth: int = Field(
        default=20, description="Object/array nesting depth before a structural penalty"
    )
    max_matches_per_signature: int = Field(
        default=32, description="Occurrences recorded per signature per variant"
    )

    # Risk bands
    warn_threshold: int = Field(default=30, description="Lowest score that is warned")
    block_threshold: int = Field(default=70, description="Scores above this are blocked")
    signed_warn_threshold: int | None = Field(
        default=None, description="Warn threshold override for signed sources"
    )
    signed_block_threshold: int | None = Field(
        default=None, description="Block threshold override for signed sources"
    )
    paired_warn_threshold: int | None = Field(
        default=None, description="Warn threshold override for paired/allowlisted sources"
    )
    paired_block_threshold: int | None = Field(
        default=None, description="Block threshold override for paired/allowlisted sources"
    )

    # Structural penalties
    depth_penalty: int = Field(default=15, description="Points added when decoding hits max depth")
    nesting_penalty: int = Field(
        default=15,
        description=(
            "Points added per nesting-limit step exceeded; only two steps count, so the "
            "effective maximum is twice this value"
        ),
    )
    size_penalty: int = Field(
        default=10, description="Points added for payloads within 10% of the size cap"
    )

    # Policy and audit
    policy_version: str = Field(default="2026.10", description="Policy version label")
    signature_registry_path: str | None = Field(
        default=None, description="Path to a JSON signature registry (built-in when unset)"
    )
    marker_secret: SecretStr | None = Field(
        default=None,
        description="Key for untrusted-content envelope MACs (random per process when unset)",
    )
    audit_log_path: str | None = Field(
        default=None, description="Append Decision Records to this JSON Lines file"
    )

    @field_validator("max_chat_bytes", "max_webhook_bytes", "max_email_bytes")
    @classmethod
    def validate_size_cap(cls, v: int) -> int:
        """Validate size caps are positive."""
        if v <= 0:
            raise ValueError(f"Size caps must be positive, got: {v}")
        return v

    @field_validator(
        "max_decode_depth",
        "max_decoded_variants",
        "max_nesting_depth",
        "max_matches_per_signature",
    )
    @classmethod
    def validate_ceiling(cls, v: int) -> int:
        """Validate resource ceilings are at least 1."""
        if v < 1:
            raise ValueError(f"Resource ceilings must be at least 1, got: {v}")
        return v

    @field_validator(
        "warn_threshold",
        "block_threshold",
        "signed_warn_threshold",
        "signed_block_threshold",
        "paired_warn_threshold",
        "paired_block_threshold",
        "depth_penalty",
        "nesting_penalty",
        "size_penalty",
    )
    @classmethod
    def validate_score_0_100(cls, v: int | None) -> int | None:
        """Validate score values are between 0 and 100."""
        if v is not None and not 0 <= v <= 100:
            raise ValueError(f"Value must be between 0 and 100, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_source_classes(self) -> Self:
        """Validate every mapped channel points at a known source class."""
        for channel, source_class in self.source_channel_classes.items():
            if source_class not in _VALID_SOURCE_CLASSES:
                raise ValueError(
                    f"source class for {channel!r} must be one of "
                    f"{list(_VALID_SOURCE_CLASSES)}, got: {source_class}"
                )
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
