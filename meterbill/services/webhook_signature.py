"""
Webhook signature verification.

Header format: ``t=<unix ts>,v1=<hex>[,v1=<hex>...]``. The expected
signature is HMAC-SHA256 over ``"{t}.{raw body}"`` keyed with the webhook
secret; any one matching ``v1`` is accepted. A positive ``tolerance_s``
also rejects timestamps older (or newer) than that many seconds.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import List, Optional, Tuple

from meterbill.core.errors import InvalidSignature

logger = logging.getLogger(__name__)


def _parse_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp: Optional[int] = None
    signatures: List[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance_s: int = 300,
    now: Optional[float] = None,
) -> int:
    """
    Check *header* against *payload*. Returns the signed timestamp.

    Raises InvalidSignature when the header is missing or malformed, the
    timestamp is outside the tolerance, or no signature matches.
    """
    if not header:
        raise InvalidSignature(detail="missing signature header")

    timestamp, signatures = _parse_header(header)
    if timestamp is None or not signatures:
        raise InvalidSignature(detail="malformed signature header")

    if tolerance_s > 0:
        current = time.time() if now is None else now
        if abs(current - timestamp) > tolerance_s:
            raise InvalidSignature(
                detail="signature timestamp outside tolerance",
                context={"timestamp": timestamp, "tolerance_s": tolerance_s},
            )

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        logger.warning("Invalid webhook signature (t=%s)", timestamp)
        raise InvalidSignature(detail="no matching v1 signature")
    return timestamp
