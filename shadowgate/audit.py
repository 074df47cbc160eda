from __future__ import annotations

"""
Append-only audit trail for the admin surface.

Every gate decision produces one immutable AuditRecord. Records are handed
to AuditLogger.record(), which only enqueues: a daemon writer thread drains
the queue into the configured sinks and subscribers, so disk latency never
sits on the response path.

Sinks:
  - MemoryAuditSink: bounded ring buffer for operator tail and tests.
  - LedgerAuditSink: hash-chained JSON-lines file on disk. Each line is
    {"head": H(ctx || body), "body": "<compact json>"} and every body
    carries seq and the previous head, so truncation or edits are
    detectable by re-walking the chain.

Failure policy:
  - a sink or subscriber that raises is retried once, then the failure is
    counted (LoggingFailure) and the record is dropped for that sink only;
  - a full queue drops the record and counts it;
  - nothing here ever raises into AuditLogger.record()'s caller.
"""

import dataclasses
import enum
import json
import logging
import os
import queue
import threading
import time
from collections import deque
from hashlib import blake2s
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Protocol, TextIO

from prometheus_client import Counter

from .allowlist import anonymize_ip
from .errors import LoggingFailure
from .logging import log_security_event
from .utils import canonical_json_dumps

__all__ = [
    "Decision",
    "AuditRecord",
    "AuditSink",
    "MemoryAuditSink",
    "LedgerAuditSink",
    "AuditLogger",
]

logger = logging.getLogger("shadowgate.audit")

_AUDIT_WRITE_FAIL = Counter(
    "shadowgate_audit_write_failures_total",
    "Audit sink or subscriber failures after retry",
    labelnames=("sink",),
)
_AUDIT_DROPPED = Counter(
    "shadowgate_audit_dropped_total",
    "Audit records dropped before reaching the writer",
    labelnames=("reason",),
)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class Decision(str, enum.Enum):
    ALLOWED = "allowed"
    DENIED_ORIGIN = "denied-origin"
    DENIED_CREDENTIAL = "denied-credential"
    DENIED_RATE_LIMITED = "denied-rate-limited"
    HONEYPOT_TRIGGERED = "honeypot-triggered"


_RISK_BY_DECISION: Dict[Decision, str] = {
    Decision.ALLOWED: "low",
    Decision.DENIED_ORIGIN: "high",
    Decision.DENIED_CREDENTIAL: "critical",
    Decision.DENIED_RATE_LIMITED: "critical",
    Decision.HONEYPOT_TRIGGERED: "high",
}


@dataclasses.dataclass(frozen=True)
class AuditRecord:
    """
    One admin-surface interaction.

    `description` and `details` are masked: they may carry fingerprints of
    presented tokens, never the tokens themselves. `details` is frozen into
    a read-only mapping on construction.
    """

    ts: float
    origin: Optional[str]
    path: str
    decision: Decision
    description: str
    method: str = "GET"
    request_id: Optional[str] = None
    details: Mapping[str, Any] = dataclasses.field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "decision", Decision(self.decision))
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))

    @property
    def risk_level(self) -> str:
        return _RISK_BY_DECISION[self.decision]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.ts,
            "origin": self.origin,
            "path": self.path,
            "method": self.method,
            "decision": self.decision.value,
            "description": self.description,
            "request_id": self.request_id,
            "risk_level": self.risk_level,
            "details": dict(self.details),
        }


class AuditSink(Protocol):
    """Destination for audit records. write() may raise; AuditLogger copes."""

    name: str

    def write(self, record: AuditRecord) -> None:
        ...

    def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class MemoryAuditSink:
    """Bounded in-process ring buffer of the most recent records."""

    name = "memory"

    def __init__(self, maxlen: int = 1000) -> None:
        self._buf: Deque[AuditRecord] = deque(maxlen=max(1, int(maxlen)))
        self._lock = threading.Lock()

    def write(self, record: AuditRecord) -> None:
        with self._lock:
            self._buf.append(record)

    def tail(self, n: int = 50) -> List[AuditRecord]:
        with self._lock:
            items = list(self._buf)
        return items[-max(0, int(n)):] if n else []

    def __len__(self) -> int:
        with self._lock:
            return len(self._buf)

    def close(self) -> None:
        pass


class LedgerAuditSink:
    """
    Append-only, hash-chained audit ledger on disk.

    File format (one JSON object per line, UTF-8):

        {"head": "<hex>", "body": "{\"seq\":..,\"prev\":..,\"ts_ns\":..,\"record\":{..}}"}

    head = blake2s(hash_ctx || body). Reopening an existing file recovers
    the last head and seq from its tail so the chain continues across
    restarts. When the active file passes rotate_mb it is renamed to
    "<path>.<epoch>.<head8>" and a fresh file continues the same chain.
    """

    name = "ledger"

    def __init__(
        self,
        path: str,
        *,
        rotate_mb: int = 50,
        sync_on_write: bool = True,
        hash_ctx: str = "shadowgate:audit_ledger",
    ) -> None:
        self.path = path
        self.rotate_bytes = int(max(1, rotate_mb) * 1024 * 1024)
        self.sync_on_write = bool(sync_on_write)
        self._ctx = hash_ctx.encode("utf-8")
        self._lock = threading.RLock()
        self._fh: Optional[TextIO] = None
        self._prev = "0" * 64
        self._seq = -1
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        self._open_and_recover()

    def _hash_body(self, body: str) -> str:
        h = blake2s(digest_size=32)
        h.update(self._ctx)
        h.update(body.encode("utf-8"))
        return h.hexdigest()

    def _open_and_recover(self) -> None:
        exists = os.path.exists(self.path) and os.path.getsize(self.path) > 0
        self._fh = open(self.path, "a", buffering=1, encoding="utf-8")
        if not exists:
            return
        size = os.path.getsize(self.path)
        with open(self.path, "rb") as rf:
            rf.seek(-min(8192, size), os.SEEK_END)
            tail = rf.read().splitlines()
        for line in reversed(tail):
            try:
                outer = json.loads(line.decode("utf-8"))
                inner = json.loads(outer["body"])
            except (ValueError, KeyError, TypeError):
                continue
            head = outer.get("head")
            if isinstance(head, str) and head:
                self._prev = head
                if isinstance(inner.get("seq"), int):
                    self._seq = inner["seq"]
                break

    def _rotate(self) -> None:
        if self._fh is not None:
            self._fh.close()
        rotated = f"{self.path}.{int(time.time())}.{self._prev[:8]}"
        os.rename(self.path, rotated)
        self._fh = open(self.path, "a", buffering=1, encoding="utf-8")

    def head(self) -> str:
        with self._lock:
            return self._prev

    def write(self, record: AuditRecord) -> None:
        with self._lock:
            if self._fh is None:
                raise LoggingFailure("ledger is closed")
            seq = self._seq + 1
            inner = {
                "v": 1,
                "seq": seq,
                "prev": self._prev,
                "ts_ns": time.time_ns(),
                "record": record.to_dict(),
            }
            body = canonical_json_dumps(inner)
            head = self._hash_body(body)
            line = json.dumps({"head": head, "body": body}, separators=(",", ":"), ensure_ascii=False)
            self._fh.write(line + "\n")
            self._fh.flush()
            # The line is in the file; advance before fsync so a retry after
            # a sync error links to it instead of forking the chain.
            self._seq = seq
            self._prev = head
            if self.sync_on_write:
                os.fsync(self._fh.fileno())
            if self._fh.tell() >= self.rotate_bytes:
                self._rotate()

    def close(self) -> None:
        with self._lock:
            fh, self._fh = self._fh, None
        if fh is not None:
            fh.close()

    @staticmethod
    def verify_chain(path: str, hash_ctx: str = "shadowgate:audit_ledger") -> bool:
        """Re-walk a ledger file; False on any broken link or bad head."""
        ctx = hash_ctx.encode("utf-8")
        prev: Optional[str] = None
        with open(path, "r", encoding="utf-8") as fh:
            for line in fh:
                if not line.strip():
                    continue
                outer = json.loads(line)
                body = outer["body"]
                h = blake2s(digest_size=32)
                h.update(ctx)
                h.update(body.encode("utf-8"))
                if h.hexdigest() != outer["head"]:
                    return False
                inner = json.loads(body)
                if prev is not None and inner["prev"] != prev:
                    return False
                prev = outer["head"]
        return True


# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------


_STOP = object()


class AuditLogger:
    """
    Fire-and-forget front end for the audit sinks.

    record() never blocks on I/O and never raises. flush() waits until
    everything enqueued so far has been offered to every sink.
    """

    def __init__(
        self,
        sinks: Optional[List[AuditSink]] = None,
        *,
        queue_size: int = 10_000,
        emit_log: bool = True,
    ) -> None:
        self._sinks: List[AuditSink] = list(sinks or [])
        self._subscribers: List[Callable[[AuditRecord], None]] = []
        self._sub_lock = threading.Lock()
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, int(queue_size)))
        self._emit_log = bool(emit_log)
        self._closed = False
        self._writer = threading.Thread(
            target=self._run, name="shadowgate-audit-writer", daemon=True
        )
        self._writer.start()

    # ---- public API ----------------------------------------------------- #

    @property
    def sinks(self) -> List[AuditSink]:
        return list(self._sinks)

    def subscribe(self, fn: Callable[[AuditRecord], None]) -> None:
        """Register an external consumer of the AuditRecord stream."""
        with self._sub_lock:
            self._subscribers.append(fn)

    def record(self, entry: AuditRecord) -> None:
        try:
            if self._closed:
                raise LoggingFailure("audit logger closed")
            self._queue.put_nowait(entry)
        except queue.Full:
            _AUDIT_DROPPED.labels("queue_full").inc()
            logger.error("audit queue full; record dropped", extra={"decision": entry.decision.value})
        except LoggingFailure:
            _AUDIT_DROPPED.labels("closed").inc()
            logger.error("audit logger closed; record dropped", extra={"decision": entry.decision.value})

    def flush(self, timeout: float = 5.0) -> bool:
        """Block until queued records are written. False on timeout."""
        done = threading.Event()
        try:
            self._queue.put(done, timeout=timeout)
        except queue.Full:
            return False
        return done.wait(timeout)

    def close(self, timeout: float = 5.0) -> None:
        if self._closed:
            return
        self.flush(timeout)
        self._closed = True
        self._queue.put(_STOP)
        self._writer.join(timeout)
        for sink in self._sinks:
            try:
                sink.close()
            except Exception:
                logger.exception("audit sink close failed", extra={"sink": getattr(sink, "name", "?")})

    # ---- writer ---------------------------------------------------------- #

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if isinstance(item, threading.Event):
                    item.set()
                    continue
                self._dispatch(item)
            finally:
                self._queue.task_done()

    def _deliver(self, label: str, fn: Callable[[AuditRecord], None], rec: AuditRecord) -> None:
        last: Optional[BaseException] = None
        for _attempt in range(2):
            try:
                fn(rec)
                return
            except Exception as e:
                last = e
        _AUDIT_WRITE_FAIL.labels(label).inc()
        err = LoggingFailure(f"{label}: {last!r}")
        logger.error("audit delivery failed: %s", err, extra={"decision": rec.decision.value})

    def _dispatch(self, rec: AuditRecord) -> None:
        if self._emit_log:
            try:
                log_security_event(
                    logger,
                    threat_label="admin_surface",
                    decision=rec.decision.value,
                    risk_level=rec.risk_level,
                    origin_masked=anonymize_ip(rec.origin),
                    path=rec.path,
                    message=rec.description,
                    extra={"req_id": rec.request_id, **dict(rec.details)},
                    level=logging.INFO if rec.decision is Decision.ALLOWED else logging.WARNING,
                )
            except Exception:
                _AUDIT_WRITE_FAIL.labels("log").inc()
        for sink in self._sinks:
            self._deliver(getattr(sink, "name", type(sink).__name__), sink.write, rec)
        with self._sub_lock:
            subs = list(self._subscribers)
        for fn in subs:
            self._deliver("subscriber", fn, rec)
