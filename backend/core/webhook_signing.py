"""HMAC-SHA256 signing for outbound workflow webhooks.

Receivers verify that a call came from the automation engine and that
its body was not altered. The signed message is ``"{timestamp}." + body``
and three headers travel with it:

  X-Automation-Signature: sha256=<hex digest>
  X-Automation-Timestamp: <unix seconds>
  X-Automation-Delivery:  <delivery id>

Workflow webhooks use ``"<run_id>:<node_id>"`` as the delivery id. It is
the same on every retry, so receivers can drop duplicates.
"""

import hashlib
import hmac
import secrets
import time
from typing import Optional
from uuid import uuid4

DEFAULT_TOLERANCE_SECONDS = 300

SIGNATURE_HEADER = "X-Automation-Signature"
TIMESTAMP_HEADER = "X-Automation-Timestamp"
DELIVERY_HEADER = "X-Automation-Delivery"
SIGNATURE_PREFIX = "sha256="


def _digest(payload: bytes, secret: str, timestamp: int) -> str:
    message = str(timestamp).encode() + b"." + payload
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_webhook_payload(
    payload: bytes,
    secret: str,
    timestamp: Optional[int] = None,
    delivery_id: Optional[str] = None,
) -> dict[str, str]:
    """Headers to send along with ``payload``.

    ``timestamp`` defaults to now and ``delivery_id`` to a random UUID.
    """
    timestamp = timestamp or int(time.time())
    return {
        SIGNATURE_HEADER: SIGNATURE_PREFIX + _digest(payload, secret, timestamp),
        TIMESTAMP_HEADER: str(timestamp),
        DELIVERY_HEADER: delivery_id or str(uuid4()),
        "Content-Type": "application/json",
    }


def verify_webhook_signature(
    payload: bytes,
    secret: str,
    signature_header: Optional[str],
    timestamp_header: Optional[str],
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    """True when the signature matches and the timestamp is within ``tolerance``."""
    try:
        timestamp = int(timestamp_header)
    except (TypeError, ValueError):
        return False
    if abs(time.time() - timestamp) > tolerance:
        return False
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    received = signature_header[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(_digest(payload, secret, timestamp), received)


def generate_webhook_secret() -> str:
    return "whsec_" + secrets.token_urlsafe(32)
