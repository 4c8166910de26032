"""Meta webhook signature verification (``X-Hub-Signature-256``)."""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def compute_signature(body: bytes, app_secret: str) -> str:
    digest = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes, header: str | None, app_secret: str) -> bool:
    """Constant-time check of the header against HMAC-SHA256(body, app_secret)."""
    if not header or not app_secret or not header.startswith(SIGNATURE_PREFIX):
        return False
    expected = compute_signature(body, app_secret)
    return hmac.compare_digest(expected.lower(), header.strip().lower())
