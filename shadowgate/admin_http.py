from __future__ import annotations

"""
HTTP surface for the covert admin gate.

- AdminGateMiddleware sits in front of the whole application. Requests
  whose path is inside the admin namespace, or matches a decoy, are run
  through AdminAccessGate before any routing happens; everything else
  passes straight through.
- Every non-allowed outcome, and any unexpected error inside the gate, is
  answered with `masked_not_found()`, which is byte-identical to what
  FastAPI returns for a route that does not exist.
- The operator router is mounted under {admin_prefix}/hidden/{secret_path}
  and only serves requests the middleware has already admitted.

Credentials never appear in any response body or header.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from .allowlist import AddressAllowlist, resolve_origin
from .audit import AuditRecord, MemoryAuditSink
from .gate import AdminAccessGate, GateOutcome, GateRequest, GateState
from .logging import bind
from .rotation import AdminCredential, SecretRotationManager

__all__ = [
    "NOT_FOUND_BODY",
    "masked_not_found",
    "PayloadSource",
    "default_payload",
    "OriginResolver",
    "peer_origin_resolver",
    "AdminContext",
    "AdminGateMiddleware",
    "create_admin_router",
    "install_admin_surface",
    "create_admin_app",
]

logger = logging.getLogger("shadowgate.admin")

# Same body Starlette/FastAPI produce for an unmatched route.
NOT_FOUND_BODY: Dict[str, str] = {"detail": "Not Found"}


def masked_not_found() -> Response:
    return JSONResponse(NOT_FOUND_BODY, status_code=404)


# -----------------------------------------------------------------------------
# Collaborators
# -----------------------------------------------------------------------------


class PayloadSource(Protocol):
    """Produces the operator payload for an admitted /access request."""

    def __call__(self, cred: AdminCredential, manager: SecretRotationManager) -> Dict[str, Any]:
        ...


OriginResolver = Callable[[Request], Optional[str]]


def peer_origin_resolver(trusted_proxies: Optional[AddressAllowlist] = None) -> OriginResolver:
    """
    Resolve the caller from the socket peer; X-Forwarded-For counts only
    when that peer is a configured trusted proxy.
    """

    def _resolve(request: Request) -> Optional[str]:
        peer = request.client.host if request.client else None
        return resolve_origin(peer, request.headers.get("x-forwarded-for"), trusted_proxies)

    return _resolve


@dataclass
class AdminContext:
    """
    Dependencies for the admin surface.

    audit_memory is optional; without it the /audit tail returns nothing.
    """

    gate: AdminAccessGate
    credentials: SecretRotationManager
    token_header: str = "X-Admin-Token"
    payload_source: Optional[PayloadSource] = None
    origin_resolver: Optional[OriginResolver] = None
    audit_memory: Optional[MemoryAuditSink] = None


def default_payload(cred: AdminCredential, manager: SecretRotationManager) -> Dict[str, Any]:
    return {
        "message": "Admin access granted",
        "generation": cred.generation,
        "issued_at": cred.issued_at,
        "time_token": manager.time_token(),
        "instructions": {
            "time_token": "send as time_token to /auth; valid for the current and previous window",
        },
    }


# -----------------------------------------------------------------------------
# Middleware
# -----------------------------------------------------------------------------


class AdminGateMiddleware(BaseHTTPMiddleware):
    """
    Runs AdminAccessGate for every request on the admin surface.

    Fail-closed: an exception while evaluating the gate is logged and the
    caller gets the same masked not-found as any other denial.
    """

    def __init__(self, app, *, ctx: AdminContext):
        super().__init__(app)
        self.ctx = ctx
        self.resolve_origin: OriginResolver = ctx.origin_resolver or peer_origin_resolver()

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        gate = self.ctx.gate
        if not gate.covers(path):
            return await call_next(request)

        try:
            greq = GateRequest(
                origin=self.resolve_origin(request),
                path=path,
                method=request.method,
                token=request.headers.get(self.ctx.token_header),
                request_id=(request.headers.get("x-request-id") or "")[:64] or None,
                user_agent=request.headers.get("user-agent"),
            )
            outcome = gate.evaluate(greq)
        except Exception:
            logger.exception("admin gate evaluation failed; masking")
            return masked_not_found()

        bind(decision=outcome.decision.value)
        if not outcome.allowed:
            resp = masked_not_found()
        else:
            request.state.admin_outcome = outcome
            resp = await call_next(request)
            resp.headers.setdefault("Cache-Control", "no-store")
        outcome.state = GateState.RESPONDED
        return resp


def _require_admitted(request: Request) -> GateOutcome:
    outcome = getattr(request.state, "admin_outcome", None)
    if outcome is None or not outcome.allowed:
        # Reached the router without the middleware admitting it.
        raise HTTPException(status_code=404, detail=NOT_FOUND_BODY["detail"])
    return outcome


# -----------------------------------------------------------------------------
# Schemas
# -----------------------------------------------------------------------------


class TimeTokenIn(BaseModel):
    time_token: Optional[str] = Field(default=None, max_length=64)


class AuthOut(BaseModel):
    ok: bool
    time_token_checked: bool


class RotateOut(BaseModel):
    rotated: bool
    generation: int
    issued_at: float


class AuditTailOut(BaseModel):
    items: List[Dict[str, Any]]
    total: int


# -----------------------------------------------------------------------------
# Router / factory
# -----------------------------------------------------------------------------


def create_admin_router(ctx: AdminContext) -> APIRouter:
    prefix = ctx.gate.admin_prefix + "/hidden/{secret_path}"
    router = APIRouter(
        prefix=prefix,
        dependencies=[Depends(_require_admitted)],
        include_in_schema=False,
    )
    payload_source: PayloadSource = ctx.payload_source or default_payload

    @router.get("/access")
    def access(secret_path: str, outcome: GateOutcome = Depends(_require_admitted)) -> Dict[str, Any]:
        cred = outcome.credential or ctx.credentials.current_credential()
        logger.info("admin access served", extra={"generation": cred.generation})
        return payload_source(cred, ctx.credentials)

    @router.post("/auth", response_model=AuthOut)
    def auth(secret_path: str, body: TimeTokenIn) -> AuthOut:
        if body.time_token is None:
            return AuthOut(ok=True, time_token_checked=False)
        if not ctx.credentials.verify_time_token(body.time_token):
            raise HTTPException(status_code=401, detail="invalid time token")
        return AuthOut(ok=True, time_token_checked=True)

    @router.post("/rotate", response_model=RotateOut)
    def rotate(secret_path: str) -> RotateOut:
        cred = ctx.credentials.rotate()
        return RotateOut(rotated=True, generation=cred.generation, issued_at=cred.issued_at)

    @router.get("/audit", response_model=AuditTailOut)
    def audit_tail(secret_path: str, n: int = Query(default=50, ge=1, le=500)) -> AuditTailOut:
        items: List[AuditRecord] = ctx.audit_memory.tail(n) if ctx.audit_memory is not None else []
        total = len(ctx.audit_memory) if ctx.audit_memory is not None else 0
        return AuditTailOut(items=[r.to_dict() for r in items], total=total)

    return router


def install_admin_surface(app: FastAPI, ctx: AdminContext) -> None:
    """Attach the gate middleware and the operator router to `app`."""
    app.include_router(create_admin_router(ctx))
    app.add_middleware(AdminGateMiddleware, ctx=ctx)


def create_admin_app(ctx: AdminContext, *, api_version: str = "0.3.0") -> FastAPI:
    """
    Build a FastAPI app that serves nothing but the admin surface.

    Docs and OpenAPI are always off: a schema listing would enumerate the
    hidden routes.
    """
    app = FastAPI(
        title="shadowgate-admin",
        version=api_version,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    install_admin_surface(app, ctx)
    return app
