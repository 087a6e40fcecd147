"""Decision Records and the sinks they are written to.

A record is assembled in one step after the decision is final and handed
to the sink exactly once.  Abandoned evaluations leave nothing behind.
"""

from __future__ import annotations

import json
import threading
import uuid
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from moltguard.logging import get_logger
from moltguard.validation.models import Action, DecisionRecord, RiskAssessment, TrustTier

log = get_logger("moltguard.validation.audit")

EXCERPT_CHARS = 120


class AuditSink(Protocol):
    """Destination for Decision Records."""

    def emit(self, record: DecisionRecord) -> None: ...


def build_record(
    *,
    content: str,
    content_sha256: str,
    content_length: int,
    source_channel: str,
    trust_tier: TrustTier,
    action: Action,
    unit_id: str | None = None,
    assessment: RiskAssessment | None = None,
    rejection: str | None = None,
    internal_error: bool = False,
    policy: dict[str, Any] | None = None,
    registry_version: str = "",
) -> DecisionRecord:
    """Assemble a complete :class:`DecisionRecord`.

    Only a length-capped excerpt of *content* is kept.
    """
    return DecisionRecord(
        record_id=uuid.uuid4().hex,
        timestamp=datetime.now(UTC),
        unit_id=unit_id,
        content_sha256=content_sha256,
        content_length=content_length,
        excerpt=content[:EXCERPT_CHARS],
        source_channel=source_channel,
        trust_tier=trust_tier,
        action=action,
        assessment=assessment,
        rejection=rejection,
        internal_error=internal_error,
        policy=dict(policy or {}),
        registry_version=registry_version,
    )


class LogAuditSink:
    """Write records to the structured log.

    Warn, block and rejected records log at WARNING so they also land in the
    rotating error log; allows log at INFO.
    """

    def __init__(self, logger_name: str = "moltguard.audit") -> None:
        self._log = get_logger(logger_name)

    def emit(self, record: DecisionRecord) -> None:
        fields = record.to_dict()
        event = "content_rejected" if record.rejection else "content_decision"
        if record.action is Action.ALLOW and not record.internal_error:
            self._log.info(event, **fields)
        else:
            self._log.warning(event, **fields)


class MemoryAuditSink:
    """Keep the most recent records in memory."""

    def __init__(self, maxlen: int = 1000) -> None:
        self._records: deque[DecisionRecord] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def emit(self, record: DecisionRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> list[DecisionRecord]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


class JsonlAuditSink:
    """Append records to a JSON Lines file, one object per line."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        log.info("jsonl_audit_sink_initialized", path=str(self._path))

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, record: DecisionRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False, sort_keys=True)
        with self._lock, self._path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")


class FanoutAuditSink:
    """Emit every record to several sinks."""

    def __init__(self, *sinks: AuditSink) -> None:
        self._sinks = sinks

    def emit(self, record: DecisionRecord) -> None:
        for sink in self._sinks:
            sink.emit(record)
