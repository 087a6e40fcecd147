"""Signature registry: weighted detection rules for the pattern matcher.

The registry is an immutable, versioned snapshot compiled once at startup
(or on an explicit reload).  Every way a record can be malformed is caught
here, at load time, so a bad rule can never fail a live evaluation.

Command- and prompt-injection patterns are whitespace tolerant: a literal
space in the pattern source matches any run of whitespace.

Built-in patterns never let two quantifiers compete for the same
characters, so a failed search stays linear in the variant length.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

from moltguard.logging import get_logger
from moltguard.validation.errors import SignatureRegistryError
from moltguard.validation.models import Signature, SignatureCategory

log = get_logger("moltguard.validation.signatures")

BUILTIN_VERSION = "builtin-4"

_WHITESPACE_TOLERANT = frozenset(
    {SignatureCategory.COMMAND_INJECTION, SignatureCategory.PROMPT_INJECTION}
)

# ---------------------------------------------------------------------------
# Built-in records: (id, category, pattern, weight)
# ---------------------------------------------------------------------------

_CMD = SignatureCategory.COMMAND_INJECTION
_PI = SignatureCategory.PROMPT_INJECTION
_OBF = SignatureCategory.OBFUSCATION_MARKER

_BUILTIN_RECORDS: list[tuple[str, SignatureCategory, str, int]] = [
    # --- Command injection ---
    (
        "cmd.pipe_to_shell",
        _CMD,
        r"\b(?:curl|wget|fetch)\b[^|\n]{0,200}\|\s*(?:sudo\s+)?"
        r"(?:(?:ba|z|k|da)?sh|python[23]?|perl|ruby|node)\b",
        80,
    ),
    (
        "cmd.downloader",
        _CMD,
        r"(?:^|[\s;&|`$(])(?:curl|wget)\s+(?:--?\w[\w-]*\s+)*['\"]?(?:https?|ftp)://",
        25,
    ),
    (
        "cmd.destructive_fs",
        _CMD,
        r"\brm\s+-(?=[a-z]*r)(?=[a-z]*f)[a-z]+\b|\bmkfs(?:\.\w+)?\b"
        r"|\bdd\s+if=\S+\s+of=/dev/|:\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
        75,
    ),
    (
        "cmd.privilege_escalation",
        _CMD,
        r"(?:^|[\s;&|])sudo\s+\S+|\bchmod\s+(?:-R\s+)?(?:[0-7]?[0-7]77|[ugo]*\+s)\b"
        r"|\bchown\s+(?:-R\s+)?root\b",
        40,
    ),
    (
        "cmd.reverse_shell",
        _CMD,
        r"\b(?:nc|ncat|netcat)\b[^\n]{0,80}\s-[a-z]*e\s|/dev/tcp/\d|\bbash -i\s*>&"
        r"|\bsocat\b[^\n]{0,80}exec:",
        85,
    ),
    (
        "cmd.command_substitution",
        _CMD,
        r"\$\(\s*(?:curl|wget)\b|`\s*(?:curl|wget)\b",
        60,
    ),
    (
        "cmd.path_traversal",
        _CMD,
        r"(?:\.\./){2,}|/etc/(?:passwd|shadow|sudoers)\b|/proc/self/environ|~/\.ssh/"
        r"|C:\\Windows\\System32",
        35,
    ),
    (
        "cmd.code_execution",
        _CMD,
        r"\b(?:eval|exec)\s*\(|__import__\s*\(|\bos\.system\s*\("
        r"|\bsubprocess\.(?:run|call|Popen|check_output)\b"
        r"|\bpowershell(?:\.exe)?\s+-(?:enc|e|encodedcommand)\b",
        45,
    ),
    (
        "cmd.secret_env_access",
        _CMD,
        r"\$\{?\w*(?:KEY|SECRET|TOKEN|PASSWORD|PASSWD|AUTH)\w*\}?",
        30,
    ),
    # --- Prompt injection ---
    (
        "pi.ignore_previous",
        _PI,
        r"\bignore (?:all )?(?:(?:the|your|any|of the) )?(?:previous|prior|earlier|above) "
        r"(?:instructions?|commands?|prompts?|rules?|directions?)",
        60,
    ),
    (
        "pi.disregard_rules",
        _PI,
        r"\bdisregard (?:(?:all|your|the|any) )+(?:(?:previous|prior|above) )?"
        r"(?:instructions?|commands?|rules?|guidelines?)",
        60,
    ),
    (
        "pi.forget_instructions",
        _PI,
        r"\bforget (?:(?:all|your|the|everything|about) )+(?:(?:previous|prior) )?"
        r"(?:instructions?|commands?|rules?|prompts?|training)",
        60,
    ),
    (
        "pi.override_instructions",
        _PI,
        r"\boverride (?:your|all|the|system) (?:instructions?|commands?|settings?|rules?)",
        55,
    ),
    (
        "pi.new_instructions",
        _PI,
        r"\bnew (?:system )?(?:instructions?|commands?|rules?)\s*:",
        50,
    ),
    (
        "pi.role_override",
        _PI,
        r"\byou are now (?:a|an|in|the|my)\b|\bpretend (?:you are|to be)\b"
        r"|\bact as (?:if|though|an? unrestricted|an? different)\b",
        45,
    ),
    (
        "pi.jailbreak_mode",
        _PI,
        r"\bjailbreak(?:ing|en)?\b|\bdan mode\b"
        r"|\b(?:enable|activate|enter) (?:developer|debug|god) mode\b"
        r"|\bdeveloper mode (?:enabled?|on|activated?)\b",
        65,
    ),
    (
        "pi.system_prompt_extraction",
        _PI,
        r"\b(?:reveal|show|print|output|repeat|dump) (?:me )?(?:your|the) "
        r"(?:system |initial |hidden )?"
        r"(?:prompt|instructions)\b|\bwhat (?:are|is) your (?:system )?(?:prompt|instructions)\b",
        45,
    ),
    (
        "pi.safety_bypass",
        _PI,
        r"\b(?:disable|bypass|ignore) (?:all |your |the )?(?:safety|safeguards?|filters?|"
        r"restrictions?|guardrails?)\b",
        55,
    ),
    (
        "pi.token_smuggling",
        _PI,
        r"\[/?INST\]|\[/?SYS\]|<<\s*/?SYS\s*>>|<\|im_(?:start|end)\|>|<\|(?:system|endoftext)\|>",
        60,
    ),
    (
        "pi.completion_attack",
        _PI,
        r"(?:^|\n)[ \t]*(?:assistant|model|ai)\s*:\s*(?:sure|of course|i'?ll|yes|ok)\b",
        40,
    ),
    (
        "pi.role_marker",
        _PI,
        r"(?:^|\n)[ \t]*(?:###\s*)?(?:system|developer)\s*:|<\s*(?:/\s*)?system\s*>",
        35,
    ),
    # --- Obfuscation markers ---
    (
        "obf.invisible_characters",
        _OBF,
        r"[\u200b-\u200f\u202a-\u202e\u2060-\u2064\ufeff]",
        20,
    ),
    (
        "obf.data_uri_base64",
        _OBF,
        r"data:[a-z]+/[a-z0-9.+-]+;base64,",
        25,
    ),
    (
        "obf.decode_and_run",
        _OBF,
        r"\bbase64\s+(?:-d|--decode)\b|\bdecode\s+(?:this|the\s+following)\b[^\n]{0,60}"
        r"\b(?:run|execute|follow|obey)\b",
        30,
    ),
]


class SignatureRegistry:
    """Immutable, versioned collection of compiled signatures."""

    def __init__(self, signatures: Iterable[Signature], *, version: str) -> None:
        self._signatures: tuple[Signature, ...] = tuple(signatures)
        self._by_id: dict[str, Signature] = {s.id: s for s in self._signatures}
        self._version = version

    @property
    def version(self) -> str:
        return self._version

    @property
    def signatures(self) -> tuple[Signature, ...]:
        return self._signatures

    def __iter__(self) -> Iterator[Signature]:
        return iter(self._signatures)

    def __len__(self) -> int:
        return len(self._signatures)

    def __contains__(self, signature_id: object) -> bool:
        return signature_id in self._by_id

    def get(self, signature_id: str) -> Signature:
        return self._by_id[signature_id]

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping[str, Any]],
        *,
        version: str,
    ) -> SignatureRegistry:
        """Compile ``{id, category, pattern, weight}`` records.

        Raises:
            SignatureRegistryError: On any malformed record.
        """
        signatures: list[Signature] = []
        seen: set[str] = set()
        for position, record in enumerate(records):
            signature = _compile_record(record, position)
            if signature.id in seen:
                raise SignatureRegistryError(f"duplicate signature id: {signature.id}")
            seen.add(signature.id)
            signatures.append(signature)

        log.info("signature_registry_loaded", version=version, signatures=len(signatures))
        return cls(signatures, version=version)

    @classmethod
    def from_file(cls, path: str | Path) -> SignatureRegistry:
        """Load a JSON artifact ``{"version": ..., "signatures": [...]}``."""
        path = Path(path)
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SignatureRegistryError(f"cannot read signature registry {path}: {e}") from e

        if not isinstance(document, dict):
            raise SignatureRegistryError("signature registry must be a JSON object")
        version = document.get("version")
        records = document.get("signatures")
        if not isinstance(version, str) or not version:
            raise SignatureRegistryError("signature registry needs a non-empty 'version'")
        if not isinstance(records, list):
            raise SignatureRegistryError("signature registry needs a 'signatures' list")
        return cls.from_records(records, version=version)


def default_registry() -> SignatureRegistry:
    """Return the built-in signature registry."""
    return SignatureRegistry.from_records(
        (
            {"id": sid, "category": category.value, "pattern": pattern, "weight": weight}
            for sid, category, pattern, weight in _BUILTIN_RECORDS
        ),
        version=BUILTIN_VERSION,
    )


def tolerate_whitespace(pattern: str) -> str:
    """Rewrite literal spaces outside character classes as ``\\s+``.

    A space that carries its own quantifier (``" ?"``, ``" *"``) is left
    alone, as are escaped characters and anything inside ``[...]``.
    """
    out: list[str] = []
    i = 0
    in_class = False
    length = len(pattern)
    while i < length:
        ch = pattern[i]
        if ch == "\\" and i + 1 < length:
            out.append(pattern[i : i + 2])
            i += 2
            continue
        if in_class:
            if ch == "]":
                in_class = False
            out.append(ch)
            i += 1
            continue
        if ch == "[":
            in_class = True
            out.append(ch)
            i += 1
            # A ']' right after '[' or '[^' is a literal member
            if i < length and pattern[i] == "^":
                out.append("^")
                i += 1
            if i < length and pattern[i] == "]":
                out.append("]")
                i += 1
            continue
        if ch == " ":
            end = i
            while end < length and pattern[end] == " ":
                end += 1
            if end < length and pattern[end] in "*+?{":
                out.append(pattern[i:end])
            else:
                out.append(r"\s+")
            i = end
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _compile_record(record: Mapping[str, Any], position: int) -> Signature:
    if not isinstance(record, Mapping):
        raise SignatureRegistryError(f"signature #{position} is not an object")

    sid = record.get("id")
    if not isinstance(sid, str) or not sid.strip():
        raise SignatureRegistryError(f"signature #{position} needs a non-empty string 'id'")

    try:
        category = SignatureCategory(record.get("category"))
    except ValueError as e:
        raise SignatureRegistryError(
            f"signature {sid!r} has unknown category {record.get('category')!r}"
        ) from e

    weight = record.get("weight")
    # bool is an int subclass; reject it explicitly
    if not isinstance(weight, int) or isinstance(weight, bool) or weight <= 0:
        raise SignatureRegistryError(f"signature {sid!r} needs a positive integer 'weight'")

    pattern = record.get("pattern")
    if not isinstance(pattern, str) or not pattern:
        raise SignatureRegistryError(f"signature {sid!r} needs a non-empty 'pattern'")

    source = tolerate_whitespace(pattern) if category in _WHITESPACE_TOLERANT else pattern
    try:
        matcher = re.compile(source, re.IGNORECASE)
    except re.error as e:
        raise SignatureRegistryError(f"signature {sid!r} has an invalid pattern: {e}") from e
    if matcher.search("") is not None:
        raise SignatureRegistryError(f"signature {sid!r} matches the empty string")

    return Signature(id=sid, category=category, pattern=pattern, weight=weight, matcher=matcher)
