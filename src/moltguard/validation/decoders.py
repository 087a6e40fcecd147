"""Obfuscation decoder: reveal text hidden behind reversible encodings.

Decoding is breadth-first over depth levels.  Each level tries every
strategy against every variant found at the previous level; encoded runs
embedded in ordinary text are decoded in place so the surrounding words
survive for the matcher.  Depth, variant count and variant length are hard
ceilings; hitting any of them sets ``depth_exceeded`` instead of failing.
"""

from __future__ import annotations

import base64
import binascii
import html
import re
import unicodedata
from collections.abc import Callable
from urllib.parse import unquote

from moltguard.logging import get_logger
from moltguard.validation.models import ContentUnit, DecodedVariant, DecodeResult, EncodingKind

log = get_logger("moltguard.validation.decoders")

DEFAULT_MAX_DEPTH = 10
DEFAULT_MAX_VARIANTS = 64

# At least 20 chars of base64 alphabet (standard or URL-safe) with optional padding
_BASE64_PATTERN = re.compile(r"(?<![A-Za-z0-9+/\-_])[A-Za-z0-9+/\-_]{20,}={0,2}")

# Long hex strings (>= 20 hex chars)
_HEX_PATTERN = re.compile(r"(?:0x)?([0-9a-fA-F]{20,})")

_PERCENT_PATTERN = re.compile(r"%[0-9a-fA-F]{2}")

_ESCAPE_PATTERN = re.compile(
    r"\\u([0-9a-fA-F]{4})|\\U([0-9a-fA-F]{8})|\\x([0-9a-fA-F]{2})"
    r"|&#[xX]?[0-9a-fA-F]+;|&[A-Za-z]{2,8};"
)

_MIN_PRINTABLE_RATIO = 0.85


def decode(
    unit: ContentUnit,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    max_variants: int = DEFAULT_MAX_VARIANTS,
) -> DecodeResult:
    """Produce every decoded rendition of *unit* up to *max_depth*.

    Never raises for content: a unit with nothing to decode yields a single
    depth-0 variant equal to its normalized text.
    """
    root = DecodedVariant(
        index=0,
        kind=EncodingKind.NONE,
        depth=0,
        text=unit.text,
        byte_length=len(unit.text.encode("utf-8")),
    )
    variants: list[DecodedVariant] = [root]
    seen: set[str] = {unit.text}
    frontier: list[DecodedVariant] = [root]
    exceeded = False

    while frontier:
        next_frontier: list[DecodedVariant] = []
        for parent in frontier:
            for kind, strategy in _STRATEGIES:
                decoded = strategy(parent.text)
                if decoded is None or decoded in seen:
                    continue
                if parent.depth >= max_depth:
                    exceeded = True
                    continue
                byte_length = len(decoded.encode("utf-8"))
                if byte_length > unit.size_limit or len(variants) >= max_variants:
                    exceeded = True
                    continue
                seen.add(decoded)
                variant = DecodedVariant(
                    index=len(variants),
                    kind=kind,
                    depth=parent.depth + 1,
                    text=decoded,
                    byte_length=byte_length,
                    parent_index=parent.index,
                )
                variants.append(variant)
                next_frontier.append(variant)
        frontier = next_frontier

    if exceeded:
        log.info(
            "decode_bound_reached",
            unit_id=unit.unit_id,
            variants=len(variants),
            max_depth=max_depth,
        )
    return DecodeResult(variants=tuple(variants), depth_exceeded=exceeded)


# ---------------------------------------------------------------------------
# Strategies: each returns the transformed text, or None if nothing decoded
# ---------------------------------------------------------------------------


def decode_base64(text: str) -> str | None:
    """Decode embedded base64 runs in place."""
    changed = False

    def _sub(match: re.Match[str]) -> str:
        nonlocal changed
        token = match.group(0)
        decoded = _b64_to_text(token)
        if decoded is None:
            return token
        changed = True
        return decoded

    result = _BASE64_PATTERN.sub(_sub, text)
    return result if changed and result != text else None


def decode_hex(text: str) -> str | None:
    """Decode embedded hex runs in place."""
    changed = False

    def _sub(match: re.Match[str]) -> str:
        nonlocal changed
        digits = match.group(1)
        if len(digits) % 2:
            return match.group(0)
        try:
            decoded = _plausible_text(bytes.fromhex(digits))
        except ValueError:
            return match.group(0)
        if decoded is None:
            return match.group(0)
        changed = True
        return decoded

    result = _HEX_PATTERN.sub(_sub, text)
    return result if changed and result != text else None


def decode_url(text: str) -> str | None:
    """Undo percent-encoding."""
    if not _PERCENT_PATTERN.search(text):
        return None
    try:
        decoded = unquote(text, errors="strict")
    except UnicodeDecodeError:
        return None
    if decoded == text or not _mostly_printable(decoded):
        return None
    return decoded


def decode_unicode_escapes(text: str) -> str | None:
    """Resolve ``\\uXXXX``/``\\xXX`` escapes and HTML character references."""
    if not _ESCAPE_PATTERN.search(text):
        return None

    def _sub(match: re.Match[str]) -> str:
        token = match.group(0)
        codepoint = match.group(1) or match.group(2) or match.group(3)
        if codepoint is not None:
            value = int(codepoint, 16)
            if value > 0x10FFFF or 0xD800 <= value <= 0xDFFF:
                return token
            return chr(value)
        return html.unescape(token)

    decoded = _ESCAPE_PATTERN.sub(_sub, text)
    if decoded == text or not _mostly_printable(decoded):
        return None
    return decoded


def decode_nfkc(text: str) -> str | None:
    """Fold compatibility characters and drop invisible format characters."""
    folded = unicodedata.normalize("NFKC", text)
    folded = "".join(c for c in folded if unicodedata.category(c) != "Cf")
    return folded if folded != text else None


_STRATEGIES: tuple[tuple[EncodingKind, Callable[[str], str | None]], ...] = (
    (EncodingKind.BASE64, decode_base64),
    (EncodingKind.URL, decode_url),
    (EncodingKind.HEX, decode_hex),
    (EncodingKind.UNICODE_ESCAPE, decode_unicode_escapes),
    (EncodingKind.UNICODE_NFKC, decode_nfkc),
)


def _b64_to_text(token: str) -> str | None:
    stripped = token.rstrip("=")
    # Pure hex or pure digits decode as base64 too; leave those to the hex strategy
    if re.fullmatch(r"[0-9a-fA-F]+", stripped):
        return None
    padded = stripped + "=" * (-len(stripped) % 4)
    altchars = b"-_" if ("-" in stripped or "_" in stripped) else None
    if altchars and ("+" in stripped or "/" in stripped):
        return None
    try:
        raw = base64.b64decode(padded, altchars=altchars, validate=True)
    except (binascii.Error, ValueError):
        return None
    return _plausible_text(raw)


def _plausible_text(raw: bytes) -> str | None:
    if len(raw) < 4:
        return None
    try:
        decoded = raw.decode("utf-8")
    except UnicodeDecodeError:
        return None
    return decoded if _mostly_printable(decoded) else None


def _mostly_printable(text: str) -> bool:
    if not text:
        return False
    printable = sum(1 for c in text if c.isprintable() or c in "\n\r\t")
    return printable / len(text) > _MIN_PRINTABLE_RATIO
