"""Normalizer: turn raw payload bytes into a :class:`ContentUnit`.

Size is checked before anything else touches the payload.  Oversized
content is rejected outright and never truncated, since truncation would
hide the tail of an attack from every later stage.
"""

from __future__ import annotations

import codecs
import hashlib
import json
import unicodedata
import uuid

from moltguard.logging import get_logger
from moltguard.validation.errors import InvalidEncodingError, SizeExceededError
from moltguard.validation.models import ContentUnit, TrustTier
from moltguard.validation.policy import PolicyConfig

log = get_logger("moltguard.validation.normalizer")

_DEFAULT_CHARSET = "utf-8"
_UTF8_BOM = "\ufeff"


def normalize(
    raw: bytes | str,
    declared_content_type: str | None = None,
    *,
    source_channel: str,
    trust_tier: TrustTier | str,
    config: PolicyConfig,
) -> ContentUnit:
    """Canonicalize a payload for analysis.

    Args:
        raw: Payload as received. ``str`` input is encoded as UTF-8 first.
        declared_content_type: MIME type claimed by the sender, if any.
        source_channel: Channel identifier used to pick the size cap.
        trust_tier: Provenance level asserted by the caller.
        config: Policy holding the size caps.

    Returns:
        The normalized :class:`ContentUnit`.

    Raises:
        SizeExceededError: The payload is larger than its source class allows.
        InvalidEncodingError: The payload cannot be decoded as declared.
    """
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    tier = TrustTier(trust_tier)

    source_class = config.source_class_for(source_channel)
    limit = config.size_limit_for(source_class)
    size = len(raw)
    if size > limit:
        log.info(
            "payload_size_exceeded",
            source_channel=source_channel,
            source_class=source_class.value,
            size=size,
            limit=limit,
        )
        raise SizeExceededError(size, limit)

    media_type, charset = parse_content_type(declared_content_type)
    original = _decode_text(raw, charset)

    structured = is_json_media_type(media_type)
    nesting = 0
    if structured:
        nesting = measure_nesting_depth(original)
        # Deep documents are scored, not parsed; json.loads would recurse
        if nesting <= config.max_nesting_depth:
            try:
                json.loads(original)
            except ValueError as e:
                raise InvalidEncodingError(f"declared JSON does not parse: {e}") from e
    elif media_type is None and original.lstrip()[:1] in ("{", "["):
        structured = True
        nesting = measure_nesting_depth(original)

    text = unicodedata.normalize("NFKC", original)

    return ContentUnit(
        unit_id=uuid.uuid4().hex,
        raw=raw,
        declared_content_type=declared_content_type,
        source_channel=source_channel,
        source_class=source_class,
        trust_tier=tier,
        original_text=original,
        text=text,
        size=size,
        size_limit=limit,
        structured=structured,
        nesting_depth=nesting,
        sha256=hashlib.sha256(raw).hexdigest(),
    )


def parse_content_type(value: str | None) -> tuple[str | None, str]:
    """Split a Content-Type header into ``(media_type, charset)``."""
    if not value or not value.strip():
        return None, _DEFAULT_CHARSET
    parts = [p.strip() for p in value.split(";")]
    media_type = parts[0].lower() or None
    charset = _DEFAULT_CHARSET
    for param in parts[1:]:
        key, _, val = param.partition("=")
        if key.strip().lower() == "charset":
            charset = val.strip().strip('"').lower() or _DEFAULT_CHARSET
    return media_type, charset


def is_json_media_type(media_type: str | None) -> bool:
    if media_type is None:
        return False
    return media_type == "application/json" or media_type.endswith("+json")


def measure_nesting_depth(text: str) -> int:
    """Return the deepest object/array nesting in a JSON-like document.

    Iterative and aware of string literals, so brackets inside strings are
    ignored and arbitrarily deep input cannot exhaust the interpreter stack.
    """
    depth = 0
    deepest = 0
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
            if depth > deepest:
                deepest = depth
        elif ch in "}]":
            depth = max(0, depth - 1)
    return deepest


def _decode_text(raw: bytes, charset: str) -> str:
    try:
        codec = codecs.lookup(charset)
    except LookupError as e:
        raise InvalidEncodingError(f"unknown charset: {charset}") from e
    try:
        text = raw.decode(codec.name)
    except UnicodeDecodeError as e:
        raise InvalidEncodingError(f"payload is not valid {codec.name}: {e.reason}") from e
    if text.startswith(_UTF8_BOM):
        text = text[1:]
    return text
