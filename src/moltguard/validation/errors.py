"""Exceptions raised by the validation pipeline.

Only two kinds ever reach a caller for attacker-controlled content, and both
are raised before any analysis runs: :class:`SizeExceededError` and
:class:`InvalidEncodingError`.  Everything else is a configuration error
surfaced at load time.
"""

from __future__ import annotations


class MoltguardError(Exception):
    """Base exception for moltguard errors."""

    pass


class ContentRejectedError(MoltguardError):
    """Content was rejected before analysis."""

    kind = "rejected"


class SizeExceededError(ContentRejectedError):
    """Raised when a payload is larger than its source class allows."""

    kind = "size_exceeded"

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"payload of {size} bytes exceeds the {limit} byte limit")


class InvalidEncodingError(ContentRejectedError):
    """Raised when content cannot be decoded as its declared type."""

    kind = "invalid_encoding"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class SignatureRegistryError(MoltguardError, ValueError):
    """Raised when a signature registry artifact is malformed."""

    pass


class PolicyConfigError(MoltguardError, ValueError):
    """Raised when a policy configuration violates its safety bounds."""

    pass
