# FILE: shadowgate/utils.py
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Optional

import blake3


# ---------------------------------------------------------------------------
# Canonical JSON + hashing helpers
# ---------------------------------------------------------------------------


def canonical_json_dumps(obj: Any, *, ensure_ascii: bool = False) -> str:
    """
    Serialize `obj` to a canonical JSON string suitable for hashing and
    hash-chained log lines (sorted keys, compact separators).
    """
    return json.dumps(
        obj,
        ensure_ascii=ensure_ascii,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def blake2s_hex(
    data: Any,
    *,
    digest_size: int = 16,
    canonical: bool = True,
    key: Optional[bytes] = None,
    domain: Optional[str] = None,
) -> str:
    """
    Compute a Blake2s hex digest for `data`.

    Args:
      data:
        - canonical=True: serialize via `canonical_json_dumps` first;
        - canonical=False: treat `data` as raw bytes/str.
      digest_size:
        Number of bytes in digest (1-32).
      key:
        Optional key for keyed hashing.
      domain:
        Optional domain string mixed into the hash input as a prefixed tag.
    """
    if digest_size < 1 or digest_size > 32:
        raise ValueError("digest_size must be in [1, 32] bytes for blake2s.")

    h = hashlib.blake2s(digest_size=digest_size, key=key or b"")

    if domain:
        h.update(b"domain:")
        h.update(domain.encode("utf-8", errors="ignore"))
        h.update(b"\x00")

    if canonical:
        h.update(canonical_json_dumps(data).encode("utf-8", errors="ignore"))
    elif isinstance(data, (bytes, bytearray)):
        h.update(data)
    else:
        h.update(str(data).encode("utf-8", errors="ignore"))

    return h.hexdigest()


def blake3_hex(data: Any, *, ctx: str, length: int = 16) -> str:
    """
    Domain-separated blake3 digest, truncated to `length` hex characters.

    Used for fingerprints of secret material: the output is safe to log,
    the input never is.
    """
    h = blake3.blake3()
    h.update(ctx.encode("utf-8"))
    h.update(b"\x00")
    if isinstance(data, (bytes, bytearray)):
        h.update(bytes(data))
    else:
        h.update(str(data).encode("utf-8", errors="ignore"))
    return h.hexdigest()[: max(8, int(length))]


def secure_compare(a: Optional[str], b: Optional[str]) -> bool:
    """
    Constant-time comparison of two strings.

    Missing values compare unequal, but the comparison still runs against a
    placeholder so the caller's timing does not depend on absence.
    """
    left = (a or "").encode("utf-8", errors="ignore")
    right = (b or "").encode("utf-8", errors="ignore")
    same = hmac.compare_digest(left, right)
    return bool(same and a is not None and b is not None)


__all__ = [
    "canonical_json_dumps",
    "blake2s_hex",
    "blake3_hex",
    "secure_compare",
]
