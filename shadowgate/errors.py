# shadowgate/errors.py
from __future__ import annotations

"""
Error taxonomy for the admin gate.

Masked denials (OriginDenied, RateLimited, CredentialInvalid,
HoneypotTriggered) are raised by the individual gate checks and converted
into an audit decision at the gate boundary. None of them ever reaches an
HTTP caller; the boundary collapses every one of them into the same
not-found response.

LoggingFailure is recovered inside the audit pipeline and never changes an
access decision. CredentialGenerationError is a startup-time failure of the
random source and is expected to take the process down.
"""

from typing import Optional

__all__ = [
    "GateError",
    "GateDenied",
    "OriginDenied",
    "RateLimited",
    "CredentialInvalid",
    "HoneypotTriggered",
    "LoggingFailure",
    "CredentialGenerationError",
]


class GateError(Exception):
    """Base class for everything raised by shadowgate."""


class GateDenied(GateError):
    """
    A masked denial. `decision` is the audit label, `reason` is a short
    internal tag that ends up in the audit description only.
    """

    decision: str = "denied"

    def __init__(self, reason: str = "") -> None:
        super().__init__(reason or self.decision)
        self.reason = reason or self.decision


class OriginDenied(GateDenied):
    decision = "denied-origin"


class HoneypotTriggered(GateDenied):
    decision = "honeypot-triggered"


class RateLimited(GateDenied):
    decision = "denied-rate-limited"

    def __init__(self, reason: str = "", retry_after: Optional[float] = None) -> None:
        super().__init__(reason)
        self.retry_after = retry_after


class CredentialInvalid(GateDenied):
    decision = "denied-credential"


class LoggingFailure(GateError):
    """An audit sink or subscriber failed; handled locally by AuditLogger."""


class CredentialGenerationError(GateError):
    """The CSPRNG could not produce a credential. Fatal; never retried weaker."""
