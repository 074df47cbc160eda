# shadowgate/rotation.py
from __future__ import annotations

"""
Process-lifetime admin credential and its rotation.

The credential (secret path segment + header token) is generated from the
OS CSPRNG when the manager is constructed, i.e. once per process start, and
again on every explicit rotate(). It lives only in memory; the only form of
it that may reach logs is `AdminCredential.fingerprint()`.

Readers take the whole credential object in one attribute read. Because
AdminCredential is frozen and rotate() swaps the reference in a single
assignment, a concurrent reader sees either the old pair or the new pair,
never a mix.
"""

import hashlib
import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .errors import CredentialGenerationError
from .utils import blake3_hex, secure_compare

__all__ = ["AdminCredential", "SecretRotationManager"]

logger = logging.getLogger("shadowgate.rotation")

_PATH_BYTES = 16    # 128 bits
_TOKEN_BYTES = 32   # 256 bits
_SALT_BYTES = 8
_TIME_TOKEN_HEX = 16


@dataclass(frozen=True)
class AdminCredential:
    secret_path: str = field(repr=False)
    access_token: str = field(repr=False)
    path_salt: str = field(repr=False)
    issued_at: float
    generation: int

    def fingerprint(self) -> str:
        """Short non-reversible digest of the pair; safe to log."""
        return blake3_hex(
            f"{self.secret_path}\x00{self.access_token}",
            ctx="shadowgate:credential",
            length=16,
        )


def _token_hex(nbytes: int) -> str:
    try:
        return secrets.token_hex(nbytes)
    except Exception as e:  # OSError/NotImplementedError from os.urandom
        raise CredentialGenerationError(f"CSPRNG unavailable: {e}") from e


class SecretRotationManager:
    """
    Owner of the single active AdminCredential.

    Args:
      time_window_s: width of a time-based token window (default 5 minutes).
      clock: wall clock used for issued_at and time-token windows.
      token_source: random hex generator, (nbytes) -> str. Only swapped in
        tests; a failing source makes construction/rotation raise.
    """

    def __init__(
        self,
        *,
        time_window_s: int = 300,
        clock: Callable[[], float] = time.time,
        token_source: Callable[[int], str] = _token_hex,
    ) -> None:
        self._time_window_s = max(1, int(time_window_s))
        self._clock = clock
        self._token_source = token_source
        self._lock = threading.Lock()
        self._listeners: List[Callable[[AdminCredential], None]] = []
        self._generation = 0
        self._current: AdminCredential = self._generate()

    # ------------------------------------------------------------------ #
    # Generation                                                         #
    # ------------------------------------------------------------------ #

    def _generate(self) -> AdminCredential:
        try:
            path = self._token_source(_PATH_BYTES)
            token = self._token_source(_TOKEN_BYTES)
            salt = self._token_source(_SALT_BYTES)
        except CredentialGenerationError:
            raise
        except Exception as e:
            raise CredentialGenerationError(f"credential generation failed: {e}") from e
        if not path or not token or path == token:
            raise CredentialGenerationError("random source returned degenerate output")
        self._generation += 1
        return AdminCredential(
            secret_path=path,
            access_token=token,
            path_salt=salt,
            issued_at=float(self._clock()),
            generation=self._generation,
        )

    # ------------------------------------------------------------------ #
    # Public API                                                         #
    # ------------------------------------------------------------------ #

    def current_credential(self) -> AdminCredential:
        return self._current

    def rotate(self) -> AdminCredential:
        """
        Replace the active credential. The previous pair is invalid as soon
        as this returns; there is no grace period.
        """
        with self._lock:
            new = self._generate()
            self._current = new
            listeners = list(self._listeners)
        logger.warning(
            "admin credential rotated",
            extra={"credential_fp": new.fingerprint(), "generation": new.generation},
        )
        for fn in listeners:
            try:
                fn(new)
            except Exception:
                logger.exception("credential rotation listener failed")
        return new

    def on_rotate(self, fn: Callable[[AdminCredential], None]) -> None:
        with self._lock:
            self._listeners.append(fn)

    # ------------------------------------------------------------------ #
    # Time-based tokens                                                  #
    # ------------------------------------------------------------------ #

    def _window_token(self, cred: AdminCredential, window: int) -> str:
        msg = f"{window}:{cred.path_salt}".encode("utf-8")
        mac = hmac.new(cred.access_token.encode("utf-8"), msg, hashlib.sha256)
        return mac.hexdigest()[:_TIME_TOKEN_HEX]

    def time_token(self, now: Optional[float] = None) -> str:
        """
        Short-lived token bound to the current credential and time window.
        """
        ts = self._clock() if now is None else now
        window = int(ts // self._time_window_s)
        return self._window_token(self._current, window)

    def verify_time_token(self, token: Optional[str], now: Optional[float] = None) -> bool:
        """
        Accept tokens from the current or the previous window. Both windows
        are always compared so timing does not reveal which one matched.
        """
        cred = self._current
        ts = self._clock() if now is None else now
        window = int(ts // self._time_window_s)
        ok = False
        for offset in (0, 1):
            ok |= secure_compare(token, self._window_token(cred, window - offset))
        return ok
