# shadowgate/tests/test_audit.py
import json

import pytest

from shadowgate.allowlist import AddressAllowlist
from shadowgate.audit import AuditLogger, AuditRecord, Decision, LedgerAuditSink, MemoryAuditSink
from shadowgate.gate import AdminAccessGate, GateRequest
from shadowgate.honeypot import HoneypotDetector
from shadowgate.ratelimit import FixedWindowRateLimiter
from shadowgate.rotation import SecretRotationManager


def _rec(i=0, decision=Decision.DENIED_ORIGIN, **details):
    return AuditRecord(
        ts=1000.0 + i,
        origin="203.0.113.%d" % (i % 250),
        path="/wp-admin",
        decision=decision,
        description="origin_not_allowlisted",
        details=details,
    )


def test_record_is_immutable():
    r = _rec(token_fp="abc")
    with pytest.raises(Exception):
        r.path = "/other"
    with pytest.raises(TypeError):
        r.details["token_fp"] = "x"


def test_decision_coercion_and_risk():
    r = AuditRecord(ts=1.0, origin=None, path="/", decision="honeypot-triggered", description="d")
    assert r.decision is Decision.HONEYPOT_TRIGGERED
    assert r.risk_level == "high"
    assert _rec(decision=Decision.DENIED_CREDENTIAL).risk_level == "critical"
    assert r.to_dict()["decision"] == "honeypot-triggered"


def test_memory_sink_keeps_tail():
    sink = MemoryAuditSink(maxlen=3)
    for i in range(5):
        sink.write(_rec(i))
    assert len(sink) == 3
    assert [r.ts for r in sink.tail(2)] == [1003.0, 1004.0]


def test_logger_flush_delivers_to_sinks_and_subscribers():
    mem = MemoryAuditSink()
    seen = []
    audit = AuditLogger([mem])
    audit.subscribe(seen.append)
    for i in range(10):
        audit.record(_rec(i))
    assert audit.flush(timeout=5)
    assert len(mem) == 10
    assert len(seen) == 10
    audit.close()


class _BrokenSink:
    name = "broken"

    def __init__(self):
        self.calls = 0

    def write(self, record):
        self.calls += 1
        raise OSError("disk full")

    def close(self):
        pass


def test_failing_sink_never_reaches_caller():
    broken = _BrokenSink()
    mem = MemoryAuditSink()
    audit = AuditLogger([broken, mem])
    audit.record(_rec())
    assert audit.flush(timeout=5)
    # retried once, then given up; other sinks unaffected
    assert broken.calls == 2
    assert len(mem) == 1
    audit.close()


def test_record_after_close_is_dropped_silently():
    mem = MemoryAuditSink()
    audit = AuditLogger([mem])
    audit.close()
    audit.record(_rec())
    assert len(mem) == 0


def test_ledger_chain_verifies_and_survives_reopen(tmp_path):
    path = str(tmp_path / "audit" / "ledger.jsonl")
    sink = LedgerAuditSink(path, sync_on_write=False)
    for i in range(3):
        sink.write(_rec(i))
    head = sink.head()
    sink.close()

    reopened = LedgerAuditSink(path, sync_on_write=False)
    assert reopened.head() == head
    reopened.write(_rec(3))
    reopened.close()

    assert LedgerAuditSink.verify_chain(path)
    with open(path, encoding="utf-8") as fh:
        bodies = [json.loads(json.loads(line)["body"]) for line in fh]
    assert [b["seq"] for b in bodies] == [0, 1, 2, 3]
    assert bodies[3]["prev"] == head


def test_ledger_tamper_is_detected(tmp_path):
    path = str(tmp_path / "ledger.jsonl")
    sink = LedgerAuditSink(path, sync_on_write=False)
    for i in range(3):
        sink.write(_rec(i))
    sink.close()

    with open(path, encoding="utf-8") as fh:
        lines = fh.readlines()
    lines[1] = lines[1].replace("203.0.113.1", "203.0.113.9")
    with open(path, "w", encoding="utf-8") as fh:
        fh.writelines(lines)
    assert not LedgerAuditSink.verify_chain(path)


def test_ledger_never_stores_secret_values(tmp_path):
    path = str(tmp_path / "ledger.jsonl")
    ledger = LedgerAuditSink(path, sync_on_write=False)
    audit = AuditLogger([ledger], emit_log=False)
    creds = SecretRotationManager()
    gate = AdminAccessGate(
        allowlist=AddressAllowlist(["127.0.0.1"]),
        credentials=creds,
        limiter=FixedWindowRateLimiter(3, 900),
        honeypot=HoneypotDetector(exempt_prefixes=["/api/admin"]),
        audit=audit,
    )
    cred = creds.current_credential()
    out = gate.evaluate(
        GateRequest(
            origin="127.0.0.1",
            path="/api/admin/hidden/%s/access" % cred.secret_path,
            token=cred.access_token,
        )
    )
    assert out.allowed
    audit.close()

    with open(path, encoding="utf-8") as fh:
        text = fh.read()
    bodies = [json.loads(json.loads(line)["body"]) for line in text.splitlines()]
    assert [b["record"]["decision"] for b in bodies] == ["allowed"]
    assert cred.secret_path not in text
    assert cred.access_token not in text
    assert LedgerAuditSink.verify_chain(path)
