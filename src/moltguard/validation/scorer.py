"""Risk scorer: fold matches and structural signals into one bounded score.

``score`` is a pure function of its inputs; identical inputs always give the
same assessment, which is what makes recorded decisions replayable.
"""

from __future__ import annotations

from collections.abc import Iterable

from moltguard.validation.models import (
    ContentUnit,
    DecodeResult,
    Match,
    RiskAssessment,
    SignatureCategory,
    StructuralPenalty,
)
from moltguard.validation.policy import MAX_SCORE, PolicyConfig
from moltguard.validation.signatures import SignatureRegistry

# Nesting beyond this many multiples of the limit earns no further points
_MAX_NESTING_STEPS = 2


def score(
    unit: ContentUnit,
    decoded: DecodeResult,
    matches: Iterable[Match],
    registry: SignatureRegistry,
    config: PolicyConfig,
) -> RiskAssessment:
    """Compute the :class:`RiskAssessment` for *unit*.

    Each signature contributes its weight once, however many variants or
    offsets it fired at, so re-encoding one payload several times cannot
    inflate the score.

    Raises:
        ValueError: A match references a signature missing from *registry*.
    """
    matches = tuple(matches)
    signature_ids = sorted({m.signature_id for m in matches})
    for sid in signature_ids:
        if sid not in registry:
            raise ValueError(f"match references unknown signature {sid!r}")

    base = min(MAX_SCORE, sum(registry.get(sid).weight for sid in signature_ids))
    penalties = structural_penalties(unit, decoded, config)
    total = min(MAX_SCORE, base + sum(points for _, points in penalties))

    matched = {registry.get(sid).category for sid in signature_ids}
    categories = tuple(c for c in SignatureCategory if c in matched)

    return RiskAssessment(
        score=total,
        base_score=base,
        signature_ids=tuple(signature_ids),
        categories=categories,
        penalties=penalties,
        recommendation=config.thresholds.classify(total),
        match_count=len(matches),
    )


def structural_penalties(
    unit: ContentUnit,
    decoded: DecodeResult,
    config: PolicyConfig,
) -> tuple[tuple[StructuralPenalty, int], ...]:
    """Return the structural penalties that apply, each at most once."""
    penalties: list[tuple[StructuralPenalty, int]] = []

    if decoded.depth_exceeded and config.depth_penalty:
        penalties.append((StructuralPenalty.DEPTH_EXCEEDED, config.depth_penalty))

    if unit.structured and unit.nesting_depth > config.max_nesting_depth:
        steps = 1
        while (
            steps < _MAX_NESTING_STEPS
            and unit.nesting_depth > config.max_nesting_depth * (steps + 1)
        ):
            steps += 1
        points = min(MAX_SCORE, config.nesting_penalty * steps)
        if points:
            penalties.append((StructuralPenalty.NESTING_EXCEEDED, points))

    if unit.size >= unit.size_limit * config.near_size_ratio and config.size_penalty:
        penalties.append((StructuralPenalty.NEAR_SIZE_LIMIT, config.size_penalty))

    return tuple(penalties)
