"""Untrusted-content validation pipeline.

Public API
----------
- :class:`ValidationPipeline` - normalize, decode, match, score and gate
- :class:`ValidationResult`, :class:`Validated` - what callers receive
- :class:`PolicyConfig`, :class:`Thresholds` - the immutable policy value
- :class:`SignatureRegistry`, :func:`default_registry` - detection rules
- :class:`SizeExceededError`, :class:`InvalidEncodingError` - pre-analysis rejections
"""

from moltguard.validation.audit import (
    AuditSink,
    FanoutAuditSink,
    JsonlAuditSink,
    LogAuditSink,
    MemoryAuditSink,
)
from moltguard.validation.errors import (
    ContentRejectedError,
    InvalidEncodingError,
    MoltguardError,
    PolicyConfigError,
    SignatureRegistryError,
    SizeExceededError,
)
from moltguard.validation.gate import GateDecision, PolicyGate, Validated
from moltguard.validation.models import (
    Action,
    DecisionRecord,
    EncodingKind,
    RiskAssessment,
    SignatureCategory,
    SourceClass,
    StructuralPenalty,
    TrustTier,
)
from moltguard.validation.pipeline import ValidationPipeline, ValidationResult, assess
from moltguard.validation.policy import PolicyConfig, Thresholds
from moltguard.validation.signatures import SignatureRegistry, default_registry

__all__ = [
    "Action",
    "AuditSink",
    "ContentRejectedError",
    "DecisionRecord",
    "EncodingKind",
    "FanoutAuditSink",
    "GateDecision",
    "InvalidEncodingError",
    "JsonlAuditSink",
    "LogAuditSink",
    "MemoryAuditSink",
    "MoltguardError",
    "PolicyConfig",
    "PolicyConfigError",
    "PolicyGate",
    "RiskAssessment",
    "SignatureCategory",
    "SignatureRegistry",
    "SignatureRegistryError",
    "SizeExceededError",
    "SourceClass",
    "StructuralPenalty",
    "Thresholds",
    "TrustTier",
    "Validated",
    "ValidationPipeline",
    "ValidationResult",
    "assess",
    "default_registry",
]
