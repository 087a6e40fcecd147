"""Content validation pipeline.

Normalizer -> Obfuscation decoder -> Pattern matcher -> Risk scorer ->
Policy gate, with one Decision Record emitted per evaluation.

The pipeline holds no per-request state.  Its collaborators (policy value,
signature registry, gate key) are fixed at construction, so one instance
can serve many threads at once without locking.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from moltguard.logging import get_logger
from moltguard.validation import decoders, matcher, scorer
from moltguard.validation.audit import (
    AuditSink,
    FanoutAuditSink,
    JsonlAuditSink,
    LogAuditSink,
    build_record,
)
from moltguard.validation.errors import ContentRejectedError
from moltguard.validation.gate import GateDecision, PolicyGate, Validated
from moltguard.validation.models import (
    Action,
    ContentUnit,
    DecisionRecord,
    RiskAssessment,
    SignatureCategory,
    TrustTier,
)
from moltguard.validation.normalizer import normalize
from moltguard.validation.policy import PolicyConfig
from moltguard.validation.signatures import SignatureRegistry, default_registry

if TYPE_CHECKING:
    from moltguard.config import Settings

log = get_logger("moltguard.validation.pipeline")


@dataclass(frozen=True)
class ValidationResult:
    """What the caller gets back from :meth:`ValidationPipeline.evaluate`."""

    action: Action
    payload: Validated[str] | None
    risk_score: int
    matched_categories: tuple[SignatureCategory, ...]
    record: DecisionRecord
    assessment: RiskAssessment | None = None
    internal_error: bool = False

    @property
    def allowed(self) -> bool:
        return self.action is not Action.BLOCK


class ValidationPipeline:
    """Evaluate untrusted content and decide whether it may pass."""

    def __init__(
        self,
        config: PolicyConfig | None = None,
        registry: SignatureRegistry | None = None,
        *,
        sink: AuditSink | None = None,
        marker_key: bytes | None = None,
    ) -> None:
        self._config = config or PolicyConfig()
        self._registry = registry if registry is not None else default_registry()
        self._sink: AuditSink = sink if sink is not None else LogAuditSink()
        self._gate = PolicyGate(self._config, marker_key=marker_key)

        log.info(
            "validation_pipeline_initialized",
            policy_version=self._config.version,
            registry_version=self._registry.version,
            signatures=len(self._registry),
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        registry: SignatureRegistry | None = None,
    ) -> ValidationPipeline:
        """Build a pipeline from application settings.

        An explicit *registry* takes precedence over the configured path.
        """
        if registry is None:
            registry = (
                SignatureRegistry.from_file(settings.signature_registry_path)
                if settings.signature_registry_path
                else default_registry()
            )
        sink: AuditSink = LogAuditSink()
        if settings.audit_log_path:
            sink = FanoutAuditSink(sink, JsonlAuditSink(settings.audit_log_path))
        marker_key = (
            settings.marker_secret.get_secret_value().encode("utf-8")
            if settings.marker_secret
            else None
        )
        return cls(
            PolicyConfig.from_settings(settings),
            registry,
            sink=sink,
            marker_key=marker_key,
        )

    @property
    def config(self) -> PolicyConfig:
        return self._config

    @property
    def registry(self) -> SignatureRegistry:
        return self._registry

    @property
    def gate(self) -> PolicyGate:
        return self._gate

    def evaluate(
        self,
        raw: bytes | str,
        *,
        declared_content_type: str | None = None,
        source_channel: str,
        trust_tier: TrustTier | str = TrustTier.UNAUTHENTICATED,
    ) -> ValidationResult:
        """Run one payload through the full pipeline.

        Args:
            raw: Payload as received from the channel adapter.
            declared_content_type: Sender-declared MIME type, if any.
            source_channel: Channel identifier (selects the size cap).
            trust_tier: Provenance level asserted by the adapter.

        Returns:
            A :class:`ValidationResult`.  Analysis faults never escape; they
            come back as a ``BLOCK`` with ``internal_error`` set.

        Raises:
            SizeExceededError: Payload larger than its source class allows.
            InvalidEncodingError: Payload not decodable as declared.
        """
        tier = TrustTier(trust_tier)

        try:
            unit = normalize(
                raw,
                declared_content_type,
                source_channel=source_channel,
                trust_tier=tier,
                config=self._config,
            )
        except ContentRejectedError as e:
            self._emit_rejection(raw, source_channel, tier, e)
            raise

        assessment: RiskAssessment | None = None
        try:
            assessment = assess(unit, self._registry, self._config)
            decision = self._gate.decide(assessment, tier, unit.text)
        except Exception:
            log.exception(
                "validation_internal_error",
                unit_id=unit.unit_id,
                source_channel=source_channel,
            )
            decision = self._gate.block_internal_error()

        record = build_record(
            content=unit.original_text,
            content_sha256=unit.sha256,
            content_length=unit.size,
            source_channel=source_channel,
            trust_tier=tier,
            action=decision.action,
            unit_id=unit.unit_id,
            assessment=assessment,
            internal_error=decision.internal_error,
            policy=self._config.snapshot(),
            registry_version=self._registry.version,
        )
        self._emit(record)

        return _result(decision, assessment, record)

    def _emit_rejection(
        self,
        raw: bytes | str,
        source_channel: str,
        tier: TrustTier,
        error: ContentRejectedError,
    ) -> None:
        data = raw.encode("utf-8") if isinstance(raw, str) else raw
        # Never echo an oversized or undecodable body; the hash identifies it
        record = build_record(
            content="",
            content_sha256=hashlib.sha256(data).hexdigest(),
            content_length=len(data),
            source_channel=source_channel,
            trust_tier=tier,
            action=Action.BLOCK,
            rejection=error.kind,
            policy=self._config.snapshot(),
            registry_version=self._registry.version,
        )
        self._emit(record)

    def _emit(self, record: DecisionRecord) -> None:
        try:
            self._sink.emit(record)
        except Exception:
            log.exception("audit_emit_failed", record_id=record.record_id)


def _result(
    decision: GateDecision,
    assessment: RiskAssessment | None,
    record: DecisionRecord,
) -> ValidationResult:
    return ValidationResult(
        action=decision.action,
        payload=decision.payload,
        risk_score=assessment.score if assessment and not decision.internal_error else 100,
        matched_categories=decision.categories,
        record=record,
        assessment=assessment,
        internal_error=decision.internal_error,
    )


def assess(
    unit: ContentUnit,
    registry: SignatureRegistry,
    config: PolicyConfig,
) -> RiskAssessment:
    """Decode, match and score a normalized unit.

    Pure with respect to its arguments, so a recorded decision can be
    replayed by normalizing the same bytes and calling this again.
    """
    decoded = decoders.decode(
        unit,
        max_depth=config.max_decode_depth,
        max_variants=config.max_decoded_variants,
    )
    matches = matcher.match(
        decoded.variants,
        registry,
        max_matches_per_signature=config.max_matches_per_signature,
    )
    return scorer.score(unit, decoded, matches, registry, config)
