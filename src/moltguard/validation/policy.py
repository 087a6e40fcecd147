"""Immutable policy configuration threaded through the pipeline.

Every threshold, cap and ceiling the pipeline consults lives on one
:class:`PolicyConfig` value built at startup.  Nothing downstream reads
process settings directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from moltguard.validation.errors import PolicyConfigError
from moltguard.validation.models import Action, SourceClass, TrustTier

if TYPE_CHECKING:
    from collections.abc import Mapping

    from moltguard.config import Settings

# The block rule can be shifted inside this range but never switched off
BLOCK_THRESHOLD_MIN = 50
BLOCK_THRESHOLD_MAX = 90

MAX_SCORE = 100


@dataclass(frozen=True)
class Thresholds:
    """Score bands: ``< warn`` allow, ``warn..block`` warn, ``> block`` block."""

    warn: int = 30
    block: int = 70

    def __post_init__(self) -> None:
        if not BLOCK_THRESHOLD_MIN <= self.block <= BLOCK_THRESHOLD_MAX:
            raise PolicyConfigError(
                f"block threshold must be between {BLOCK_THRESHOLD_MIN} and "
                f"{BLOCK_THRESHOLD_MAX}, got: {self.block}"
            )
        if not 0 <= self.warn <= self.block:
            raise PolicyConfigError(
                f"warn threshold must be between 0 and the block threshold, got: {self.warn}"
            )

    def classify(self, score: int) -> Action:
        """Map a score to its band; both bounds of the warn band are inclusive."""
        if score > self.block:
            return Action.BLOCK
        if score >= self.warn:
            return Action.WARN
        return Action.ALLOW


def _default_size_limits() -> Mapping[SourceClass, int]:
    return MappingProxyType(
        {
            SourceClass.CHAT: 50 * 1024,
            SourceClass.WEBHOOK: 1024 * 1024,
            SourceClass.EMAIL: 1024 * 1024,
        }
    )


def _default_channel_classes() -> Mapping[str, SourceClass]:
    return MappingProxyType(
        {
            "webhook": SourceClass.WEBHOOK,
            "gmail": SourceClass.EMAIL,
            "email": SourceClass.EMAIL,
        }
    )


@dataclass(frozen=True)
class PolicyConfig:
    """Thresholds, caps and ceilings for one pipeline instance.

    ``nesting_penalty`` is charged once for nesting past
    ``max_nesting_depth`` and again past twice that depth, so a structured
    payload can earn at most ``2 * nesting_penalty`` for nesting.
    """

    version: str = "2026.10"
    thresholds: Thresholds = field(default_factory=Thresholds)
    tier_thresholds: Mapping[TrustTier, Thresholds] = field(
        default_factory=lambda: MappingProxyType({})
    )
    size_limits: Mapping[SourceClass, int] = field(default_factory=_default_size_limits)
    channel_classes: Mapping[str, SourceClass] = field(default_factory=_default_channel_classes)
    max_decode_depth: int = 10
    max_decoded_variants: int = 64
    max_nesting_depth: int = 20
    max_matches_per_signature: int = 32
    depth_penalty: int = 15
    nesting_penalty: int = 15
    size_penalty: int = 10
    near_size_ratio: float = 0.9

    def __post_init__(self) -> None:
        # Freeze caller-supplied dicts so the value really is immutable
        object.__setattr__(self, "tier_thresholds", MappingProxyType(dict(self.tier_thresholds)))
        object.__setattr__(self, "size_limits", MappingProxyType(dict(self.size_limits)))
        object.__setattr__(
            self,
            "channel_classes",
            MappingProxyType({k.lower(): v for k, v in self.channel_classes.items()}),
        )

        missing = [c.value for c in SourceClass if c not in self.size_limits]
        if missing:
            raise PolicyConfigError(f"size limits missing for source classes: {missing}")
        for source_class, limit in self.size_limits.items():
            if limit <= 0:
                raise PolicyConfigError(f"size limit for {source_class} must be positive")

        for name in (
            "max_decode_depth",
            "max_decoded_variants",
            "max_nesting_depth",
            "max_matches_per_signature",
        ):
            if getattr(self, name) < 1:
                raise PolicyConfigError(f"{name} must be at least 1")

        for name in ("depth_penalty", "nesting_penalty", "size_penalty"):
            if not 0 <= getattr(self, name) <= MAX_SCORE:
                raise PolicyConfigError(f"{name} must be between 0 and {MAX_SCORE}")

        if not 0 < self.near_size_ratio <= 1:
            raise PolicyConfigError("near_size_ratio must be in (0, 1]")

        # Unauthenticated sources may be made stricter, never more lenient
        strict = self.tier_thresholds.get(TrustTier.UNAUTHENTICATED)
        if strict is not None and (
            strict.warn > self.thresholds.warn or strict.block > self.thresholds.block
        ):
            raise PolicyConfigError(
                "unauthenticated thresholds may only be stricter than the global thresholds"
            )

    def thresholds_for(self, tier: TrustTier) -> Thresholds:
        """Return the thresholds that apply to *tier*."""
        return self.tier_thresholds.get(tier, self.thresholds)

    def source_class_for(self, channel: str) -> SourceClass:
        """Map a channel to its source class; unknown channels get the smallest cap."""
        return self.channel_classes.get(channel.lower(), SourceClass.CHAT)

    def size_limit_for(self, source_class: SourceClass) -> int:
        return self.size_limits[source_class]

    def snapshot(self) -> dict[str, Any]:
        """Return the threshold snapshot stored on Decision Records."""
        return {
            "version": self.version,
            "warn_threshold": self.thresholds.warn,
            "block_threshold": self.thresholds.block,
            "tier_thresholds": {
                tier.value: {"warn": t.warn, "block": t.block}
                for tier, t in sorted(self.tier_thresholds.items())
            },
            "max_decode_depth": self.max_decode_depth,
            "max_nesting_depth": self.max_nesting_depth,
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> PolicyConfig:
        """Build the policy value from application settings."""
        base = Thresholds(warn=settings.warn_threshold, block=settings.block_threshold)

        tier_thresholds: dict[TrustTier, Thresholds] = {}
        overrides = {
            TrustTier.SIGNED: (settings.signed_warn_threshold, settings.signed_block_threshold),
            TrustTier.PAIRED: (settings.paired_warn_threshold, settings.paired_block_threshold),
        }
        for tier, (warn, block) in overrides.items():
            if warn is None and block is None:
                continue
            tier_thresholds[tier] = Thresholds(
                warn=base.warn if warn is None else warn,
                block=base.block if block is None else block,
            )

        channel_classes = dict(_default_channel_classes())
        channel_classes.update(
            {
                channel: SourceClass(source_class)
                for channel, source_class in settings.source_channel_classes.items()
            }
        )

        return cls(
            version=settings.policy_version,
            thresholds=base,
            tier_thresholds=tier_thresholds,
            size_limits={
                SourceClass.CHAT: settings.max_chat_bytes,
                SourceClass.WEBHOOK: settings.max_webhook_bytes,
                SourceClass.EMAIL: settings.max_email_bytes,
            },
            channel_classes=channel_classes,
            max_decode_depth=settings.max_decode_depth,
            max_decoded_variants=settings.max_decoded_variants,
            max_nesting_depth=settings.max_nesting_depth,
            max_matches_per_signature=settings.max_matches_per_signature,
            depth_penalty=settings.depth_penalty,
            nesting_penalty=settings.nesting_penalty,
            size_penalty=settings.size_penalty,
        )
