# FILE: shadowgate/service_http.py
from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TextIO

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .admin_http import AdminContext, OriginResolver, PayloadSource, install_admin_surface, peer_origin_resolver
from .allowlist import AddressAllowlist
from .audit import AuditLogger, AuditSink, LedgerAuditSink, MemoryAuditSink
from .config import GateSettings, load_settings
from .gate import AdminAccessGate
from .honeypot import HoneypotDetector
from .logging import RequestLogMiddleware, configure_json_logging
from .ratelimit import FixedWindowRateLimiter
from .rotation import AdminCredential, SecretRotationManager

__all__ = ["GateComponents", "build_components", "announce_credential", "create_app"]

logger = logging.getLogger("shadowgate.http")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class GateComponents:
    settings: GateSettings
    allowlist: AddressAllowlist
    trusted_proxies: AddressAllowlist
    credentials: SecretRotationManager
    limiter: FixedWindowRateLimiter
    honeypot: HoneypotDetector
    audit: AuditLogger
    audit_memory: Optional[MemoryAuditSink]
    gate: AdminAccessGate


def build_components(
    settings: GateSettings,
    *,
    credentials: Optional[SecretRotationManager] = None,
    limiter_clock: Optional[Callable[[], float]] = None,
    extra_sinks: Optional[List[AuditSink]] = None,
) -> GateComponents:
    """
    Construct every gate component from one settings snapshot.

    A CredentialGenerationError from the rotation manager propagates: the
    service must not start without a strong credential.
    """
    allowlist = AddressAllowlist(settings.ip_allowlist)
    trusted = AddressAllowlist(settings.trusted_proxies)
    creds = credentials or SecretRotationManager(time_window_s=settings.time_token_window_seconds)

    limiter_kwargs: Dict[str, Any] = {"max_buckets": settings.rate_max_buckets}
    if limiter_clock is not None:
        limiter_kwargs["clock"] = limiter_clock
    limiter = FixedWindowRateLimiter(settings.rate_limit, settings.rate_window_seconds, **limiter_kwargs)

    honeypot = HoneypotDetector(settings.honeypot_paths, exempt_prefixes=(settings.admin_prefix,))

    sinks: List[AuditSink] = []
    memory: Optional[MemoryAuditSink] = None
    if settings.audit_memory_size > 0:
        memory = MemoryAuditSink(settings.audit_memory_size)
        sinks.append(memory)
    if settings.audit_ledger_path:
        sinks.append(
            LedgerAuditSink(
                settings.audit_ledger_path,
                rotate_mb=settings.audit_ledger_rotate_mb,
                sync_on_write=settings.audit_ledger_fsync,
            )
        )
    sinks.extend(extra_sinks or [])
    audit = AuditLogger(sinks, queue_size=settings.audit_queue_size)

    gate = AdminAccessGate(
        allowlist=allowlist,
        credentials=creds,
        limiter=limiter,
        honeypot=honeypot,
        audit=audit,
        admin_prefix=settings.admin_prefix,
    )
    return GateComponents(
        settings=settings,
        allowlist=allowlist,
        trusted_proxies=trusted,
        credentials=creds,
        limiter=limiter,
        honeypot=honeypot,
        audit=audit,
        audit_memory=memory,
        gate=gate,
    )


def announce_credential(
    cred: AdminCredential,
    settings: GateSettings,
    *,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Surface the credential to the operator out-of-band.

    With reveal_credential_on_start the plaintext goes straight to the
    console stream, bypassing the logging pipeline and its shippers.
    Otherwise only the fingerprint is logged.
    """
    logger.warning(
        "admin credential active",
        extra={"credential_fp": cred.fingerprint(), "generation": cred.generation},
    )
    if not settings.reveal_credential_on_start:
        return
    out = stream or sys.stderr
    out.write(
        "[shadowgate] admin access (generation %d)\n"
        "  path:   %s/hidden/%s/access\n"
        "  header: %s: %s\n"
        % (cred.generation, settings.admin_prefix, cred.secret_path, settings.token_header, cred.access_token)
    )
    out.flush()


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Optional[GateSettings] = None,
    *,
    origin_resolver: Optional[OriginResolver] = None,
    payload_source: Optional[PayloadSource] = None,
    credentials: Optional[SecretRotationManager] = None,
    limiter_clock: Optional[Callable[[], float]] = None,
    configure_logging: bool = False,
) -> FastAPI:
    """
    Build the host app: health, readiness and metrics, with the covert admin
    surface installed in front of all routing.

    The gate middleware wraps the whole app so that root-level decoys such
    as /wp-admin are intercepted, not just paths under admin_prefix.
    """
    settings = settings or load_settings()
    if configure_logging:
        configure_json_logging(level=settings.log_level)

    comps = build_components(settings, credentials=credentials, limiter_clock=limiter_clock)
    announce_credential(comps.credentials.current_credential(), settings)
    comps.credentials.on_rotate(lambda cred: announce_credential(cred, settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        comps.audit.close()

    openapi_url = "/openapi.json" if settings.enable_docs else None
    app = FastAPI(
        title=settings.app_name,
        version=settings.api_version,
        openapi_url=openapi_url,
        docs_url="/docs" if settings.enable_docs else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.gate_components = comps

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True, "version": settings.api_version, "config_hash": settings.config_hash()}

    @app.get("/readyz")
    def readyz() -> Dict[str, Any]:
        return {"ready": True}

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    ctx = AdminContext(
        gate=comps.gate,
        credentials=comps.credentials,
        token_header=settings.token_header,
        payload_source=payload_source,
        origin_resolver=origin_resolver or peer_origin_resolver(comps.trusted_proxies),
        audit_memory=comps.audit_memory,
    )
    install_admin_surface(app, ctx)
    app.add_middleware(RequestLogMiddleware, path_filter=comps.gate.mask_path)

    logger.info(
        "shadowgate started",
        extra={
            "config_hash": settings.config_hash(),
            "config_origin": settings.config_origin,
            "allowlist_size": len(comps.allowlist),
            "decoys": len(comps.honeypot.paths),
        },
    )
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        create_app(configure_logging=True),
        host="127.0.0.1",
        port=8000,
        # uvicorn access lines carry the raw path
        access_log=False,
    )
