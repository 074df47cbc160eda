# shadowgate/tests/test_gate.py
import pytest

from shadowgate.allowlist import AddressAllowlist
from shadowgate.audit import AuditLogger, Decision, MemoryAuditSink
from shadowgate.gate import AdminAccessGate, GateRequest, GateState
from shadowgate.honeypot import HoneypotDetector
from shadowgate.ratelimit import FixedWindowRateLimiter
from shadowgate.rotation import SecretRotationManager

ALLOWED = "127.0.0.1"
STRANGER = "203.0.113.50"


class FakeClock:
    def __init__(self, t=0.0):
        self.t = t

    def __call__(self):
        return self.t


@pytest.fixture
def env():
    mem = MemoryAuditSink()
    audit = AuditLogger([mem], emit_log=False)
    clock = FakeClock(1000.0)
    creds = SecretRotationManager()
    gate = AdminAccessGate(
        allowlist=AddressAllowlist([ALLOWED]),
        credentials=creds,
        limiter=FixedWindowRateLimiter(3, 900, clock=clock),
        honeypot=HoneypotDetector(exempt_prefixes=["/api/admin"]),
        audit=audit,
        admin_prefix="/api/admin",
    )
    yield gate, creds, mem, audit, clock
    audit.close()


def _access(cred, origin=ALLOWED, token=None, segment=None):
    return GateRequest(
        origin=origin,
        path="/api/admin/hidden/%s/access" % (segment or cred.secret_path),
        token=cred.access_token if token is None else token,
    )


def test_valid_request_is_allowed(env):
    gate, creds, mem, audit, _ = env
    cred = creds.current_credential()
    out = gate.evaluate(_access(cred))
    assert out.allowed
    assert out.state is GateState.DECIDED
    assert out.reached is GateState.CREDENTIAL_CHECKED
    assert out.credential is cred
    audit.flush()
    assert mem.tail(1)[0].decision is Decision.ALLOWED


def test_stranger_with_valid_credential_is_denied_origin(env):
    gate, creds, _, _, _ = env
    out = gate.evaluate(_access(creds.current_credential(), origin=STRANGER))
    assert out.decision is Decision.DENIED_ORIGIN
    assert out.reached is GateState.RECEIVED
    assert out.credential is None


def test_unresolved_origin_is_denied(env):
    gate, creds, _, _, _ = env
    out = gate.evaluate(_access(creds.current_credential(), origin=None))
    assert out.decision is Decision.DENIED_ORIGIN
    assert out.record.details["origin_unresolved"] is True


def test_origin_check_runs_before_rate_limit(env):
    gate, creds, _, _, _ = env
    for _ in range(10):
        gate.evaluate(_access(creds.current_credential(), origin=STRANGER))
    assert gate.limiter.snapshot() == {}


def test_honeypot_from_allowed_origin(env):
    gate, _, _, _, _ = env
    out = gate.evaluate(GateRequest(origin=ALLOWED, path="/wp-admin/install.php"))
    assert out.decision is Decision.HONEYPOT_TRIGGERED
    assert out.record.risk_level == "high"
    # decoy hits still consume a slot
    assert gate.limiter.snapshot()[ALLOWED]["count"] == 1.0


def test_honeypot_from_stranger_is_origin_denial_with_flag(env):
    gate, _, _, _, _ = env
    out = gate.evaluate(GateRequest(origin=STRANGER, path="/admin"))
    assert out.decision is Decision.DENIED_ORIGIN
    assert out.record.details["honeypot"] is True


def test_fourth_attempt_is_rate_limited_even_with_valid_credential(env):
    gate, creds, _, _, clock = env
    cred = creds.current_credential()
    for _ in range(3):
        assert gate.evaluate(_access(cred, token="wrong")).decision is Decision.DENIED_CREDENTIAL
    out = gate.evaluate(_access(cred))
    assert out.decision is Decision.DENIED_RATE_LIMITED
    assert out.retry_after == pytest.approx(900.0)
    assert out.record.risk_level == "critical"

    clock.t += 900
    assert gate.evaluate(_access(cred)).allowed


def test_credential_denial_reasons(env):
    gate, creds, _, _, _ = env
    cred = creds.current_credential()

    out = gate.evaluate(_access(cred, token="nope"))
    assert out.decision is Decision.DENIED_CREDENTIAL
    assert out.record.description == "invalid_access_token"
    assert "token_fp" in out.record.details

    out = gate.evaluate(_access(cred, segment="0" * 32))
    assert out.record.description == "invalid_secret_path"

    out = gate.evaluate(GateRequest(origin=ALLOWED, path="/api/admin/settings"))
    assert out.record.description == "no_secret_path+missing_access_token"


def test_audit_never_carries_presented_secrets(env):
    gate, creds, mem, audit, _ = env
    cred = creds.current_credential()
    gate.evaluate(_access(cred, token="attacker-guess-token"))
    gate.evaluate(_access(cred, segment="guessed-segment"))
    gate.evaluate(_access(cred))
    audit.flush()
    records = mem.tail(10)
    assert records[-1].decision is Decision.ALLOWED
    for rec in records:
        text = repr(rec.to_dict())
        assert cred.access_token not in text
        assert cred.secret_path not in text
        assert "attacker-guess-token" not in text
        assert "guessed-segment" not in text
        assert rec.path.startswith("/api/admin/hidden/fp-")
        assert rec.path.endswith("/access")


def test_mask_path_only_touches_hidden_segment(env):
    gate, creds, _, _, _ = env
    secret = creds.current_credential().secret_path
    masked = gate.mask_path("/api/admin/hidden/%s/audit" % secret)
    assert secret not in masked
    assert masked == gate.mask_path("/api/admin/hidden/%s/audit" % secret)
    assert gate.mask_path("/api/admin/settings") == "/api/admin/settings"
    assert gate.mask_path("/wp-admin") == "/wp-admin"


def test_rotation_invalidates_previous_pair(env):
    gate, creds, _, _, _ = env
    old = creds.current_credential()
    assert gate.evaluate(_access(old)).allowed
    new = creds.rotate()
    assert gate.evaluate(_access(old)).decision is Decision.DENIED_CREDENTIAL
    assert gate.evaluate(_access(new)).allowed


def test_mixed_pair_is_rejected(env):
    gate, creds, _, _, _ = env
    old = creds.current_credential()
    new = creds.rotate()
    out = gate.evaluate(_access(new, token=old.access_token))
    assert out.decision is Decision.DENIED_CREDENTIAL


def test_covers_namespace_and_decoys(env):
    gate, _, _, _, _ = env
    assert gate.covers("/api/admin")
    assert gate.covers("/api/admin/hidden/x/access")
    assert gate.covers("/wp-admin")
    assert not gate.covers("/api/administrator")
    assert not gate.covers("/healthz")
    assert gate.secret_segment("/api/admin/hidden/abc/access") == "abc"
    assert gate.secret_segment("/api/admin/hidden/") is None
