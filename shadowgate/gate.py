# shadowgate/gate.py
from __future__ import annotations

"""
AdminAccessGate: one decision per request touching the admin surface.

Checks run in a fixed order, each cheaper than the next, and origin always
comes before anything that touches the credential:

    RECEIVED -> ORIGIN_CHECKED -> RATE_CHECKED -> CREDENTIAL_CHECKED -> DECIDED

evaluate() stops at DECIDED; the HTTP layer marks the outcome RESPONDED
once the response for it has been built.

  1. origin not allowlisted        -> denied-origin
  2. path is a decoy               -> honeypot-triggered (still charges a slot)
  3. rate limiter refuses          -> denied-rate-limited
  4. path segment / token mismatch -> denied-credential
  5. otherwise                     -> allowed

Each check raises a GateDenied subclass; evaluate() is the only place they
are caught, turned into an AuditRecord, and reported back as a GateOutcome.
Callers render every non-allowed outcome the same way.
"""

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from prometheus_client import Counter, Histogram

from .allowlist import AddressAllowlist
from .audit import AuditLogger, AuditRecord, Decision
from .errors import CredentialInvalid, GateDenied, HoneypotTriggered, OriginDenied, RateLimited
from .honeypot import HoneypotDetector
from .ratelimit import FixedWindowRateLimiter
from .rotation import AdminCredential, SecretRotationManager
from .utils import blake3_hex, secure_compare

__all__ = ["GateState", "GateRequest", "GateOutcome", "AdminAccessGate"]

_GATE_DECISIONS = Counter(
    "shadowgate_gate_decisions_total",
    "Admin gate decisions",
    labelnames=("decision",),
)
_GATE_LATENCY = Histogram(
    "shadowgate_gate_eval_seconds",
    "Time spent evaluating the admin gate",
    buckets=(0.0001, 0.0005, 0.001, 0.0025, 0.005, 0.01, 0.05, 0.1),
)


class GateState(str, enum.Enum):
    RECEIVED = "RECEIVED"
    ORIGIN_CHECKED = "ORIGIN_CHECKED"
    RATE_CHECKED = "RATE_CHECKED"
    CREDENTIAL_CHECKED = "CREDENTIAL_CHECKED"
    DECIDED = "DECIDED"
    RESPONDED = "RESPONDED"


@dataclass(frozen=True)
class GateRequest:
    origin: Optional[str]
    path: str
    method: str = "GET"
    token: Optional[str] = field(default=None, repr=False)
    request_id: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class GateOutcome:
    decision: Decision
    state: GateState
    record: AuditRecord
    credential: Optional[AdminCredential] = field(default=None, repr=False)
    retry_after: Optional[float] = None
    # Last state reached before the decision was committed.
    reached: GateState = GateState.RECEIVED

    @property
    def allowed(self) -> bool:
        return self.decision is Decision.ALLOWED


def _fp(value: Optional[str], ctx: str) -> Optional[str]:
    if not value:
        return None
    return blake3_hex(value, ctx=ctx, length=12)


class AdminAccessGate:
    """
    Composes allowlist, honeypot detector, rate limiter and credential
    manager into a single allow / masked-deny decision.

    The credential is read once per evaluation, so a concurrent rotate()
    yields either the complete old pair or the complete new pair.
    """

    def __init__(
        self,
        *,
        allowlist: AddressAllowlist,
        credentials: SecretRotationManager,
        limiter: FixedWindowRateLimiter,
        honeypot: HoneypotDetector,
        audit: AuditLogger,
        admin_prefix: str = "/api/admin",
        clock=time.time,
    ) -> None:
        self.allowlist = allowlist
        self.credentials = credentials
        self.limiter = limiter
        self.honeypot = honeypot
        self.audit = audit
        self.admin_prefix = "/" + admin_prefix.strip().strip("/")
        self._hidden_prefix = self.admin_prefix + "/hidden/"
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Surface membership                                                 #
    # ------------------------------------------------------------------ #

    def in_namespace(self, path: str) -> bool:
        return path == self.admin_prefix or path.startswith(self.admin_prefix + "/")

    def covers(self, path: str) -> bool:
        """True if the request belongs to the admin surface (real or decoy)."""
        return self.in_namespace(path) or self.honeypot.matches(path)

    def secret_segment(self, path: str) -> Optional[str]:
        if not path.startswith(self._hidden_prefix):
            return None
        seg = path[len(self._hidden_prefix):].split("/", 1)[0]
        return seg or None

    def mask_path(self, path: str) -> str:
        """
        Path as it may be persisted or logged: the hidden segment, right or
        wrong, is replaced by its fingerprint.
        """
        segment = self.secret_segment(path)
        if segment is None:
            return path
        rest = path[len(self._hidden_prefix) + len(segment):]
        return self._hidden_prefix + "fp-" + (_fp(segment, "shadowgate:path-attempt") or "") + rest

    # ------------------------------------------------------------------ #
    # Checks                                                             #
    # ------------------------------------------------------------------ #

    def _check_origin(self, req: GateRequest, details: Dict[str, Any]) -> None:
        if req.origin is None:
            details["origin_unresolved"] = True
        if not self.allowlist.is_allowed(req.origin):
            if self.honeypot.matches(req.path):
                details["honeypot"] = True
            raise OriginDenied("origin_not_allowlisted")

    def _check_honeypot(self, req: GateRequest, details: Dict[str, Any]) -> None:
        if not self.honeypot.matches(req.path):
            return
        # Decoy hits consume a slot so a decoy flood is not free.
        rd = self.limiter.allow(req.origin)
        if not rd.permitted:
            details["rate_limited"] = True
            details["retry_after"] = round(rd.retry_after or 0.0, 3)
        raise HoneypotTriggered("decoy_path_probed")

    def _check_rate(self, req: GateRequest, details: Dict[str, Any]) -> None:
        rd = self.limiter.allow(req.origin)
        if not rd.permitted:
            details["retry_after"] = round(rd.retry_after or 0.0, 3)
            raise RateLimited("rate_limit_exceeded", retry_after=rd.retry_after)

    def _check_credential(self, req: GateRequest, details: Dict[str, Any]) -> AdminCredential:
        cred = self.credentials.current_credential()
        segment = self.secret_segment(req.path)
        # Both comparisons always run; no short-circuit on the first miss.
        path_ok = secure_compare(segment, cred.secret_path)
        token_ok = secure_compare(req.token, cred.access_token)
        if path_ok and token_ok:
            return cred

        reasons = []
        if not path_ok:
            reasons.append("invalid_secret_path" if segment else "no_secret_path")
            details["path_fp"] = _fp(segment, "shadowgate:path-attempt")
        if not token_ok:
            reasons.append("invalid_access_token" if req.token else "missing_access_token")
            details["token_fp"] = _fp(req.token, "shadowgate:token-attempt")
        raise CredentialInvalid("+".join(reasons))

    # ------------------------------------------------------------------ #
    # Decision                                                           #
    # ------------------------------------------------------------------ #

    def evaluate(self, req: GateRequest) -> GateOutcome:
        t0 = time.perf_counter()
        state = GateState.RECEIVED
        details: Dict[str, Any] = {}
        if req.user_agent:
            details["ua_fp"] = _fp(req.user_agent, "shadowgate:ua")
        cred: Optional[AdminCredential] = None
        retry_after: Optional[float] = None

        try:
            self._check_origin(req, details)
            state = GateState.ORIGIN_CHECKED
            self._check_honeypot(req, details)
            self._check_rate(req, details)
            state = GateState.RATE_CHECKED
            cred = self._check_credential(req, details)
            state = GateState.CREDENTIAL_CHECKED
            decision = Decision.ALLOWED
            description = "admin_access_granted"
            details["generation"] = cred.generation
        except RateLimited as denial:
            decision = Decision(denial.decision)
            description = denial.reason
            retry_after = denial.retry_after
        except GateDenied as denial:
            decision = Decision(denial.decision)
            description = denial.reason

        record = AuditRecord(
            ts=self._clock(),
            origin=req.origin,
            path=self.mask_path(req.path),
            method=req.method,
            decision=decision,
            description=description,
            request_id=req.request_id,
            details={k: v for k, v in details.items() if v is not None},
        )
        self.audit.record(record)

        _GATE_DECISIONS.labels(decision.value).inc()
        _GATE_LATENCY.observe(max(0.0, time.perf_counter() - t0))
        return GateOutcome(
            decision=decision,
            state=GateState.DECIDED,
            record=record,
            credential=cred,
            retry_after=retry_after,
            reached=state,
        )
