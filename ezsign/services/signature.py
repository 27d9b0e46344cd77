"""
Webhook signature service.

Computes HMAC-SHA256 signatures over "{timestamp}.{body}" and builds the
fixed header set sent with every delivery. Pure functions, no I/O.

The body that is signed must be byte-identical to the body transmitted:
serialize once with serialize_payload() and reuse that string.
"""
import hashlib
import hmac
import json
import secrets
import time
import uuid
from typing import Any, Literal, Mapping

DEFAULT_PRODUCT = "EzSign"
SIGNATURE_PREFIX = "sha256="
SECRET_PREFIX = "whsec_"

DeliveryIdMode = Literal["random", "stable"]

# Namespace for delivery ids derived from the event id
DELIVERY_ID_NAMESPACE = uuid.UUID("5b0f3c8e-6a57-4f6e-9d0e-3f1e0c9a7b21")


def serialize_payload(payload: Mapping[str, Any]) -> str:
    """
    Serialize a payload to the exact JSON text that is signed and sent.

    Compact separators, key order preserved, non-ASCII kept as UTF-8.
    """
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def _body_text(body: Mapping[str, Any] | str) -> str:
    if isinstance(body, str):
        return body
    return serialize_payload(body)


def sign(body: Mapping[str, Any] | str, secret: str, timestamp: int) -> str:
    """
    Compute the hex HMAC-SHA256 of "{timestamp}.{body}" with the shared secret.

    Args:
        body: Serialized JSON body, or a payload dict to serialize.
        secret: Webhook shared secret.
        timestamp: Unix seconds included in the signed message.

    Returns:
        Lowercase hex digest (without the "sha256=" prefix).
    """
    message = f"{timestamp}.{_body_text(body)}"
    return hmac.new(
        secret.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def header_names(product: str = DEFAULT_PRODUCT) -> dict[str, str]:
    """Names of the product-prefixed webhook headers."""
    return {
        "signature": f"X-{product}-Signature",
        "event": f"X-{product}-Event",
        "delivery_id": f"X-{product}-Delivery-ID",
        "timestamp": f"X-{product}-Timestamp",
    }


def build_headers(
    event_type: str,
    delivery_id: str,
    timestamp: int,
    signature: str,
    product: str = DEFAULT_PRODUCT,
) -> dict[str, str]:
    """Build the fixed header set for one delivery attempt."""
    names = header_names(product)
    return {
        "Content-Type": "application/json",
        "User-Agent": f"{product}-Webhooks/1.0",
        names["signature"]: f"{SIGNATURE_PREFIX}{signature}",
        names["event"]: event_type,
        names["delivery_id"]: delivery_id,
        names["timestamp"]: str(timestamp),
    }


def verify(
    body: Mapping[str, Any] | str,
    secret: str,
    timestamp: int,
    signature: str,
    max_age_seconds: int | None = None,
    now: int | None = None,
) -> bool:
    """
    Receiver-side check of a webhook signature.

    Accepts the raw hex digest or the "sha256=<hex>" header form. When
    max_age_seconds is given, timestamps outside that window are rejected.
    """
    if max_age_seconds is not None:
        current = int(time.time()) if now is None else now
        if abs(current - timestamp) > max_age_seconds:
            return False

    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]

    expected = sign(body, secret, timestamp)
    return hmac.compare_digest(expected, signature)


def verify_headers(
    raw_body: str,
    headers: Mapping[str, str],
    secret: str,
    product: str = DEFAULT_PRODUCT,
    max_age_seconds: int | None = None,
) -> bool:
    """
    Verify a received webhook from its raw body and headers.

    Raises:
        ValueError: If the signature or timestamp header is missing or malformed.
    """
    names = header_names(product)
    lowered = {k.lower(): v for k, v in headers.items()}
    signature = lowered.get(names["signature"].lower())
    timestamp_str = lowered.get(names["timestamp"].lower())

    if not signature:
        raise ValueError(f"Missing {names['signature']} header")
    if not timestamp_str:
        raise ValueError(f"Missing {names['timestamp']} header")

    try:
        timestamp = int(timestamp_str)
    except ValueError as e:
        raise ValueError(f"Invalid {names['timestamp']} header: must be integer") from e

    return verify(raw_body, secret, timestamp, signature, max_age_seconds=max_age_seconds)


def generate_secret() -> str:
    """New webhook secret: "whsec_" followed by 32 hex characters."""
    return SECRET_PREFIX + secrets.token_hex(16)


def delivery_id_for(event_id: str | None = None, mode: DeliveryIdMode = "random") -> str:
    """
    Delivery id for one attempt.

    "random" issues a fresh uuid4 on every attempt, so receivers cannot use
    it to deduplicate retries. "stable" derives it from the event id, so
    every retry of the same event carries the same id.
    """
    if mode == "stable" and event_id is not None:
        return str(uuid.uuid5(DELIVERY_ID_NAMESPACE, event_id))
    return str(uuid.uuid4())
