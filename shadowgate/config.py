# shadowgate/config.py
from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

from .utils import blake2s_hex


_log = logging.getLogger(__name__)


# Commonly probed admin panel paths. Matched exactly or on a segment boundary.
DEFAULT_HONEYPOT_PATHS: Tuple[str, ...] = (
    "/admin",
    "/administrator",
    "/wp-admin",
    "/admin.php",
    "/panel",
    "/dashboard",
    "/control",
    "/manage",
    "/admin/login",
    "/admin/panel",
    "/adminpanel",
)


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return tuple(x.strip() for x in raw.split(",") if x.strip())


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Ignore if path missing.
      - Only accept dict at top-level.
      - Scalars and lists of scalars are kept; anything else is coerced via str().
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        elif isinstance(v, (list, tuple)):
            out[str(k)] = tuple(str(x) for x in v)
        else:
            out[str(k)] = str(v)
    return out


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class GateSettings(BaseModel):
    """
    Single immutable snapshot of the gate configuration.

    Secrets are deliberately absent: the admin credential is generated per
    process and never configured.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Identity ---------------------------------------------------------

    app_name: str = "shadowgate"
    api_version: str = "0.3.0"
    enable_docs: bool = False
    config_origin: str = "defaults"

    # --- Admin surface ----------------------------------------------------

    admin_prefix: str = "/api/admin"
    token_header: str = "X-Admin-Token"

    # --- Network origin ---------------------------------------------------

    ip_allowlist: Tuple[str, ...] = ()
    trusted_proxies: Tuple[str, ...] = ()

    # --- Rate limiting (fixed window) -------------------------------------

    rate_limit: int = 3
    rate_window_seconds: float = 15 * 60.0
    rate_max_buckets: int = 10_000

    # --- Honeypot ---------------------------------------------------------

    honeypot_paths: Tuple[str, ...] = DEFAULT_HONEYPOT_PATHS

    # --- Credential -------------------------------------------------------

    time_token_window_seconds: int = 300
    reveal_credential_on_start: bool = False

    # --- Audit ------------------------------------------------------------

    audit_ledger_path: str = ""
    audit_ledger_fsync: bool = True
    audit_ledger_rotate_mb: int = 50
    audit_memory_size: int = 1000
    audit_queue_size: int = 10_000

    # --- Logging ----------------------------------------------------------

    log_level: str = "INFO"

    @field_validator("admin_prefix")
    @classmethod
    def _prefix_ok(cls, v: str) -> str:
        v = "/" + v.strip().strip("/")
        if v == "/":
            raise ValueError("admin_prefix must not be the site root")
        return v

    @field_validator("honeypot_paths")
    @classmethod
    def _decoys_ok(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        out = []
        for p in v:
            p = p.strip()
            if not p:
                continue
            if not p.startswith("/"):
                p = "/" + p
            out.append(p)
        return tuple(out)

    def config_hash(self) -> str:
        """
        Stable, content-agnostic hash of the current settings.

        Safe to embed in logs. The allowlist is included so operators can tell
        whether two replicas run with the same network policy.
        """
        return blake2s_hex(self.model_dump(mode="json"), domain="shadowgate:settings")


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings(environ_prefix: str = "SHADOWGATE_") -> GateSettings:
    """
    Load GateSettings from defaults, optional YAML, and environment variables.

    Priority:
      1. GateSettings defaults (in-code).
      2. YAML file pointed to by SHADOWGATE_CONFIG_PATH.
      3. Environment variables (SHADOWGATE_*), with bounds; values outside
         the bounds are ignored.
    """
    merged: Dict[str, Any] = GateSettings().model_dump()
    origin = "defaults"

    yaml_path = os.environ.get(environ_prefix + "CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = GateSettings(**tmp).model_dump()  # extra="forbid" rejects typos
        origin = "yaml"

    def _env(key: str) -> str:
        return environ_prefix + key.upper()

    def _override(
        key: str,
        parser: Callable[[str, Any], Any],
        bounds: Optional[Tuple[float, float]] = None,
    ) -> None:
        old = merged.get(key)
        new = parser(_env(key), old)
        if bounds is not None and isinstance(new, (int, float)) and not isinstance(new, bool):
            lo, hi = bounds
            if new < lo or new > hi:
                _log.warning("ignoring out-of-range %s=%r", _env(key), new)
                return
        if new != old:
            merged[key] = new

    _override("api_version", lambda n, d: os.environ.get(n, d))
    _override("enable_docs", _env_bool)
    _override("admin_prefix", lambda n, d: os.environ.get(n, d))
    _override("token_header", lambda n, d: os.environ.get(n, d))
    _override("ip_allowlist", _env_list)
    _override("trusted_proxies", _env_list)
    _override("rate_limit", _env_int, (1, 1_000_000))
    _override("rate_window_seconds", _env_float, (1.0, 86_400.0 * 7))
    _override("rate_max_buckets", _env_int, (1, 10_000_000))
    _override("honeypot_paths", _env_list)
    _override("time_token_window_seconds", _env_int, (30, 86_400))
    _override("reveal_credential_on_start", _env_bool)
    _override("audit_ledger_path", lambda n, d: os.environ.get(n, d))
    _override("audit_ledger_fsync", _env_bool)
    _override("audit_ledger_rotate_mb", _env_int, (1, 10_000))
    _override("audit_memory_size", _env_int, (0, 1_000_000))
    _override("audit_queue_size", _env_int, (1, 10_000_000))
    _override("log_level", lambda n, d: os.environ.get(n, d))

    if origin == "defaults" and any(k.startswith(environ_prefix) for k in os.environ):
        origin = "env"
    merged["config_origin"] = origin

    settings = GateSettings(**merged)
    if not settings.ip_allowlist:
        _log.warning("admin ip_allowlist is empty; the admin surface is unreachable")
    return settings


__all__ = [
    "DEFAULT_HONEYPOT_PATHS",
    "GateSettings",
    "load_settings",
]
