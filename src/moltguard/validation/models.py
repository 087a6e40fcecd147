"""Data models for the content validation pipeline."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class TrustTier(StrEnum):
    """Caller-asserted provenance of a content source."""

    UNAUTHENTICATED = "unauthenticated"
    SIGNED = "signed"
    PAIRED = "paired"  # Paired device or allowlisted sender


class SourceClass(StrEnum):
    """Source classes with their own payload size caps."""

    CHAT = "chat"
    WEBHOOK = "webhook"
    EMAIL = "email"


class EncodingKind(StrEnum):
    """Reversible transformations the decoder knows how to undo."""

    NONE = "none"
    BASE64 = "base64"
    URL = "url"
    HEX = "hex"
    UNICODE_ESCAPE = "unicode_escape"
    UNICODE_NFKC = "unicode_nfkc"


class SignatureCategory(StrEnum):
    """Categories of detection signatures."""

    COMMAND_INJECTION = "command_injection"
    PROMPT_INJECTION = "prompt_injection"
    OBFUSCATION_MARKER = "obfuscation_marker"


class Action(StrEnum):
    """Recommendation of the scorer and enforcement action of the gate."""

    ALLOW = "allow"
    WARN = "warn"  # Allow, wrapped in an untrusted-content envelope
    BLOCK = "block"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    def stricter(self, other: Action) -> Action:
        """Return whichever of the two actions is more severe."""
        return self if self.severity >= other.severity else other

    def relaxed(self) -> Action:
        """Return the action one band below this one (ALLOW stays ALLOW)."""
        return _BY_SEVERITY[max(0, self.severity - 1)]


_SEVERITY = {Action.ALLOW: 0, Action.WARN: 1, Action.BLOCK: 2}
_BY_SEVERITY = {v: k for k, v in _SEVERITY.items()}

Recommendation = Action


class StructuralPenalty(StrEnum):
    """Structural signals that add to the risk score.

    Hitting the decode depth bound is scored here and never raised.
    """

    DEPTH_EXCEEDED = "depth_exceeded"
    NESTING_EXCEEDED = "nesting_exceeded"
    NEAR_SIZE_LIMIT = "near_size_limit"


@dataclass(frozen=True)
class ContentUnit:
    """One message, email body or webhook field submitted for validation.

    Attributes:
        unit_id: Random identifier for correlating logs and records.
        raw: The payload bytes exactly as received.
        declared_content_type: Caller-supplied MIME type (untrusted).
        source_channel: Channel identifier, e.g. ``"telegram"``.
        source_class: Size-cap class the channel maps to.
        trust_tier: Provenance level asserted by the adapter.
        original_text: Decoded text before Unicode normalization.
        text: NFKC-normalized text used for analysis.
        size: Payload size in bytes.
        size_limit: Cap that applied to this payload.
        structured: Whether the payload is a JSON document.
        nesting_depth: Maximum object/array nesting (0 when unstructured).
        sha256: Hex digest of ``raw``.
    """

    unit_id: str
    raw: bytes = field(repr=False)
    declared_content_type: str | None
    source_channel: str
    source_class: SourceClass
    trust_tier: TrustTier
    original_text: str = field(repr=False)
    text: str = field(repr=False)
    size: int
    size_limit: int
    structured: bool = False
    nesting_depth: int = 0
    sha256: str = ""


@dataclass(frozen=True)
class DecodedVariant:
    """One decoded rendition of a content unit's text."""

    index: int
    kind: EncodingKind
    depth: int
    text: str = field(repr=False)
    byte_length: int
    parent_index: int | None = None


@dataclass(frozen=True)
class DecodeResult:
    """Ordered variants (discovery order) plus the depth-bound flag."""

    variants: tuple[DecodedVariant, ...]
    depth_exceeded: bool = False

    @property
    def max_depth(self) -> int:
        return max((v.depth for v in self.variants), default=0)


@dataclass(frozen=True)
class Signature:
    """A named, weighted detection rule."""

    id: str
    category: SignatureCategory
    pattern: str
    weight: int
    matcher: re.Pattern[str] = field(compare=False, repr=False)


@dataclass(frozen=True)
class Match:
    """Evidence that a signature fired against a decoded variant."""

    signature_id: str
    category: SignatureCategory
    variant_index: int
    depth: int
    offset: int  # UTF-8 byte offset within the variant text
    excerpt: str


@dataclass(frozen=True)
class RiskAssessment:
    """Policy-independent evaluation of a content unit."""

    score: int
    base_score: int
    signature_ids: tuple[str, ...]
    categories: tuple[SignatureCategory, ...]
    penalties: tuple[tuple[StructuralPenalty, int], ...]
    recommendation: Action
    match_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "base_score": self.base_score,
            "signature_ids": list(self.signature_ids),
            "categories": [c.value for c in self.categories],
            "penalties": {p.value: points for p, points in self.penalties},
            "recommendation": self.recommendation.value,
            "match_count": self.match_count,
        }


@dataclass(frozen=True)
class DecisionRecord:
    """Immutable audit artifact written once per evaluation."""

    record_id: str
    timestamp: datetime
    unit_id: str | None
    content_sha256: str
    content_length: int
    excerpt: str
    source_channel: str
    trust_tier: TrustTier
    action: Action
    assessment: RiskAssessment | None = None
    rejection: str | None = None
    internal_error: bool = False
    policy: dict[str, Any] = field(default_factory=dict)
    registry_version: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable mapping of the record."""
        return {
            "record_id": self.record_id,
            "timestamp": self.timestamp.isoformat(),
            "unit_id": self.unit_id,
            "content_sha256": self.content_sha256,
            "content_length": self.content_length,
            "excerpt": self.excerpt,
            "source_channel": self.source_channel,
            "trust_tier": self.trust_tier.value,
            "action": self.action.value,
            "assessment": self.assessment.to_dict() if self.assessment else None,
            "rejection": self.rejection,
            "internal_error": self.internal_error,
            "policy": self.policy,
            "registry_version": self.registry_version,
        }
