"""Admission-control identity for callers.

Authenticated callers are keyed by their account (``account:<id>``); the
account id is already an authenticated grant, so it is used as-is.

Anonymous callers are keyed by ``sha256("<origin>-<signature>-<fingerprint>")``
as 64 lowercase hex characters. The same triple always yields the same key
and the raw signals cannot be recovered from it.

The fields are joined with a bare "-", so triples whose dashes shift between
fields (e.g. signature "a-b" + fingerprint "c" vs "a" + "b-c") share a key.
The format is kept as-is so keys already stored in the ledger stay valid;
other distinct triples collide only with SHA-256 collision probability.
"""

from __future__ import annotations

import hashlib
from typing import Mapping, Optional

ORIGIN_PLACEHOLDER = "127.0.0.1"
SIGNATURE_PLACEHOLDER = "unknown"
FINGERPRINT_PLACEHOLDER = "none"


def resolve_identity(
    origin: Optional[str],
    signature: Optional[str],
    fingerprint: Optional[str] = None,
    account_id: Optional[str] = None,
) -> str:
    if account_id:
        return f"account:{account_id}"
    raw = "-".join(
        (
            origin or ORIGIN_PLACEHOLDER,
            signature or SIGNATURE_PLACEHOLDER,
            fingerprint or FINGERPRINT_PLACEHOLDER,
        )
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def client_origin(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Best-effort network origin: CDN header, then first X-Forwarded-For hop, then peer."""
    cf = (headers.get("cf-connecting-ip") or "").strip()
    if cf:
        return cf
    forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return peer or ORIGIN_PLACEHOLDER
