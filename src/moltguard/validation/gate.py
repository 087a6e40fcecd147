"""Policy gate: turn a risk assessment and trust tier into an enforcement action.

Downstream consumers only ever see content through :class:`Validated`,
which the gate alone can issue.  A consumer that accepts ``Validated[str]``
cannot be handed raw, unchecked payload by an un-migrated call site.
"""

from __future__ import annotations

import re
import secrets
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Generic, TypeVar

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from moltguard.logging import get_logger
from moltguard.validation.models import Action, RiskAssessment, SignatureCategory, TrustTier
from moltguard.validation.policy import PolicyConfig

log = get_logger("moltguard.validation.gate")

T = TypeVar("T")

_SEAL = object()

_ENVELOPE_PATTERN = re.compile(
    r"\A\[UNTRUSTED CONTENT id=(?P<id>[0-9a-f]{16}) categories=(?P<categories>[a-z_,]*) "
    r"mac=(?P<mac>[0-9a-f]{64})\]\n(?P<content>.*)\n\[/UNTRUSTED CONTENT id=(?P=id)\]\Z",
    re.DOTALL,
)


class Validated(Generic[T]):
    """A value that has passed the policy gate.

    Only the gate can construct one; any other attempt raises ``TypeError``.
    """

    __slots__ = ("_value", "_action")

    def __init__(self, value: T, action: Action, *, _seal: object = None) -> None:
        if _seal is not _SEAL:
            raise TypeError("Validated values can only be issued by the policy gate")
        self._value = value
        self._action = action

    @property
    def value(self) -> T:
        return self._value

    @property
    def action(self) -> Action:
        return self._action

    def __repr__(self) -> str:
        return f"Validated(action={self._action.value})"


@dataclass(frozen=True)
class GateDecision:
    """Enforcement outcome for one content unit.

    ``payload`` is ``None`` exactly when ``action`` is ``BLOCK``.
    """

    action: Action
    payload: Validated[str] | None
    recommendation: Action
    tier_action: Action
    categories: tuple[SignatureCategory, ...] = ()
    internal_error: bool = False


class PolicyGate:
    """Apply trust-tier policy on top of the score-derived recommendation."""

    def __init__(self, config: PolicyConfig, *, marker_key: bytes | None = None) -> None:
        """Initialize the gate.

        Args:
            config: Immutable policy value.
            marker_key: Key for envelope MACs.  A random key is generated
                when omitted, so envelopes verify only within this process.
        """
        self._config = config
        self._marker_key = marker_key if marker_key else secrets.token_bytes(32)

    @property
    def config(self) -> PolicyConfig:
        return self._config

    def decide(
        self,
        assessment: RiskAssessment,
        trust_tier: TrustTier | str,
        content: str,
    ) -> GateDecision:
        """Decide what happens to *content*.

        Unauthenticated sources never get a weaker action than the score
        recommends.  Signed and paired sources may use relaxed thresholds,
        but at most one band below the recommendation, so a block can soften
        to a warning and never to an allow.
        """
        tier = TrustTier(trust_tier)
        recommendation = assessment.recommendation
        tier_action = self._config.thresholds_for(tier).classify(assessment.score)

        if tier is TrustTier.UNAUTHENTICATED:
            action = tier_action.stricter(recommendation)
        else:
            action = tier_action.stricter(recommendation.relaxed())

        if action is Action.BLOCK:
            payload = None
        elif action is Action.WARN:
            payload = Validated(
                self.wrap(content, assessment.categories), action, _seal=_SEAL
            )
        else:
            payload = Validated(content, action, _seal=_SEAL)

        if action is not recommendation:
            log.debug(
                "gate_adjusted_recommendation",
                trust_tier=tier.value,
                recommendation=recommendation.value,
                action=action.value,
                score=assessment.score,
            )

        return GateDecision(
            action=action,
            payload=payload,
            recommendation=recommendation,
            tier_action=tier_action,
            categories=assessment.categories,
        )

    def block_internal_error(self) -> GateDecision:
        """Conservative decision used when analysis itself failed."""
        return GateDecision(
            action=Action.BLOCK,
            payload=None,
            recommendation=Action.BLOCK,
            tier_action=Action.BLOCK,
            internal_error=True,
        )

    # ------------------------------------------------------------------
    # Untrusted-content envelope
    # ------------------------------------------------------------------

    def wrap(self, content: str, categories: Iterable[SignatureCategory]) -> str:
        """Wrap *content* in a tamper-evident untrusted-content envelope.

        The header lists matched categories only; raw matched text never
        appears in it.
        """
        boundary = secrets.token_hex(8)
        category_list = ",".join(sorted(c.value for c in categories))
        mac = self._mac(boundary, category_list, content).hex()
        return (
            f"[UNTRUSTED CONTENT id={boundary} categories={category_list} mac={mac}]\n"
            f"{content}\n"
            f"[/UNTRUSTED CONTENT id={boundary}]"
        )

    def verify(self, envelope: str) -> bool:
        """Return ``True`` if *envelope* was produced by this gate unmodified."""
        parsed = _ENVELOPE_PATTERN.match(envelope)
        if parsed is None:
            return False
        h = hmac.HMAC(self._marker_key, hashes.SHA256())
        h.update(_mac_input(parsed["id"], parsed["categories"], parsed["content"]))
        try:
            h.verify(bytes.fromhex(parsed["mac"]))
        except InvalidSignature:
            return False
        return True

    def _mac(self, boundary: str, categories: str, content: str) -> bytes:
        h = hmac.HMAC(self._marker_key, hashes.SHA256())
        h.update(_mac_input(boundary, categories, content))
        return h.finalize()


def _mac_input(boundary: str, categories: str, content: str) -> bytes:
    return f"{boundary}\n{categories}\n".encode() + content.encode("utf-8")
