"""
Webhook Delivery Transport

Performs the single outbound POST for one delivery attempt and classifies
the outcome. Nothing is persisted here.
"""
import time
from dataclasses import dataclass
from typing import Any, Mapping

import httpx
import structlog

from ezsign.services.signature import (
    DEFAULT_PRODUCT,
    DeliveryIdMode,
    build_headers,
    delivery_id_for,
    serialize_payload,
    sign,
)

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
RESPONSE_BODY_LIMIT = 1000

RETRYABLE_STATUS_CODES = frozenset({408, 429})

_DNS_FAILURE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
)


@dataclass
class DeliveryResult:
    """Outcome of one delivery attempt."""
    success: bool
    status_code: int | None
    response_body: str | None
    response_time_ms: int
    error_message: str | None = None
    delivery_id: str | None = None


def should_retry(status_code: int | None) -> bool:
    """
    Whether a failed attempt is worth retrying.

    Network failures (no status), 408, 429 and 5xx are retryable. Any other
    4xx is permanent: bad request, auth or not-found won't improve on retry.
    """
    if status_code is None:
        return True
    if status_code in RETRYABLE_STATUS_CODES:
        return True
    return 500 <= status_code < 600


def describe_network_error(exc: httpx.HTTPError, timeout: float) -> str:
    """Human-readable message for a failure that produced no response."""
    if isinstance(exc, httpx.TimeoutException):
        return f"Request timeout after {timeout:g} seconds"
    if isinstance(exc, httpx.ConnectError):
        text = str(exc).lower()
        if any(marker in text for marker in _DNS_FAILURE_MARKERS):
            return "DNS resolution failed - hostname not found"
        if "refused" in text:
            return "Connection refused"
        return f"Connection error: {exc}"
    return str(exc) or exc.__class__.__name__ or "Network error"


class DeliveryTransport:
    """
    Outbound HTTP transport for webhook deliveries.

    Redirects are never followed; a 3xx comes back as an ordinary
    non-2xx status. Every status code is captured rather than raised.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        body_limit: int = RESPONSE_BODY_LIMIT,
        product: str = DEFAULT_PRODUCT,
        delivery_id_mode: DeliveryIdMode = "random",
    ):
        self.client = client
        self.timeout = timeout
        self.body_limit = body_limit
        self.product = product
        self.delivery_id_mode = delivery_id_mode

    should_retry = staticmethod(should_retry)

    def _truncate(self, text: str | None) -> str | None:
        if text is None:
            return None
        return text[: self.body_limit]

    async def deliver(
        self,
        url: str,
        secret: str,
        event_type: str,
        payload: Mapping[str, Any],
        event_id: str | None = None,
    ) -> DeliveryResult:
        """
        POST a signed payload to a webhook URL.

        The payload is serialized once; the signature covers exactly the
        bytes that are sent.
        """
        start = time.monotonic()
        delivery_id = delivery_id_for(event_id, self.delivery_id_mode)
        timestamp = int(time.time())

        body = serialize_payload(payload)
        signature = sign(body, secret, timestamp)
        headers = build_headers(event_type, delivery_id, timestamp, signature, product=self.product)

        try:
            response = await self.client.post(
                url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=self.timeout,
                follow_redirects=False,
            )
        except httpx.HTTPError as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            message = describe_network_error(e, self.timeout)
            logger.warning(
                "webhook_request_error",
                url=url,
                event_type=event_type,
                delivery_id=delivery_id,
                error=message,
            )
            return DeliveryResult(
                success=False,
                status_code=None,
                response_body=None,
                response_time_ms=elapsed_ms,
                error_message=message,
                delivery_id=delivery_id,
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        status_code = response.status_code
        success = 200 <= status_code < 300

        return DeliveryResult(
            success=success,
            status_code=status_code,
            response_body=self._truncate(response.text),
            response_time_ms=elapsed_ms,
            error_message=None if success else f"HTTP {status_code}",
            delivery_id=delivery_id,
        )
