"""Pattern matcher: run every signature against every decoded variant."""

from __future__ import annotations

from collections.abc import Iterable

from moltguard.validation.models import DecodedVariant, Match
from moltguard.validation.signatures import SignatureRegistry

DEFAULT_MAX_MATCHES_PER_SIGNATURE = 32

_EXCERPT_CHARS = 64


def match(
    variants: Iterable[DecodedVariant],
    registry: SignatureRegistry,
    *,
    max_matches_per_signature: int = DEFAULT_MAX_MATCHES_PER_SIGNATURE,
) -> tuple[Match, ...]:
    """Collect every occurrence of every signature across *variants*.

    Occurrences are recorded per variant and offset; the scorer is the one
    that counts each signature once.  Offsets are UTF-8 byte offsets into
    the variant text.
    """
    matches: list[Match] = []
    for variant in variants:
        text = variant.text
        for signature in registry:
            found = 0
            for hit in signature.matcher.finditer(text):
                if hit.end() == hit.start():
                    continue
                matches.append(
                    Match(
                        signature_id=signature.id,
                        category=signature.category,
                        variant_index=variant.index,
                        depth=variant.depth,
                        offset=len(text[: hit.start()].encode("utf-8")),
                        excerpt=hit.group(0)[:_EXCERPT_CHARS],
                    )
                )
                found += 1
                if found >= max_matches_per_signature:
                    break

    matches.sort(key=lambda m: (m.variant_index, m.offset, m.signature_id))
    return tuple(matches)
