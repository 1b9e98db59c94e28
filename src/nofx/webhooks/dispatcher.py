"""Outgoing event webhook with HMAC signing and retries."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import ipaddress
import json
import logging
import socket
from typing import Any
from urllib.parse import urlparse

import httpx

from nofx.config import settings

logger = logging.getLogger(__name__)

# Networks blocked for SSRF prevention
_BLOCKED_NETWORKS = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
]


def validate_webhook_url(url: str) -> str:
    """Reject non-http(s) URLs and hosts resolving to private networks."""
    parsed = urlparse(url)
    if parsed.scheme not in ("https", "http"):
        raise ValueError(f"webhook url must use http(s), got '{parsed.scheme}'")
    if not parsed.hostname:
        raise ValueError("webhook url has no hostname")

    try:
        resolved = socket.getaddrinfo(parsed.hostname, parsed.port or 443)
    except socket.gaierror as e:
        raise ValueError(f"Cannot resolve hostname '{parsed.hostname}': {e}")

    for _, _, _, _, sockaddr in resolved:
        ip = ipaddress.ip_address(sockaddr[0])
        for network in _BLOCKED_NETWORKS:
            if ip in network:
                raise ValueError(f"webhook url resolves to blocked network ({ip})")
    return url


def _sign_payload(body: str, secret: str) -> str:
    """Create HMAC-SHA256 signature for a webhook payload."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


async def forward_event(
    envelope: dict[str, Any],
    url: str | None = None,
    max_retries: int = 3,
) -> bool:
    """POST one event envelope ``{runId, stepId, type, payload}`` to the webhook.

    Returns True if the webhook was delivered successfully.
    """
    url = url or settings.event_webhook_url
    try:
        validate_webhook_url(url)
    except ValueError as e:
        logger.error(f"Webhook URL validation failed: {e}")
        return False

    event_type = str(envelope.get("type", ""))
    run_id = envelope.get("runId")
    body = json.dumps(envelope, default=str)
    headers = {
        "Content-Type": "application/json",
        "X-Nofx-Signature": _sign_payload(body, settings.webhook_secret),
        "X-Nofx-Event": event_type,
    }

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(10.0)) as client:
                response = await client.post(url, content=body, headers=headers)

            if response.status_code < 400:
                logger.info(
                    f"Webhook delivered: {event_type} for run {run_id} "
                    f"(status={response.status_code})"
                )
                return True

            logger.warning(
                f"Webhook attempt {attempt} got status {response.status_code} for {url}"
            )

        except httpx.HTTPError as e:
            logger.warning(f"Webhook attempt {attempt} failed: {e}")

        if attempt < max_retries:
            await asyncio.sleep(min(2**attempt, 30))

    logger.error(
        f"Webhook delivery failed after {max_retries} attempts: "
        f"{event_type} for run {run_id} to {url}"
    )
    return False


async def handle_event_message(message: dict[str, Any]) -> None:
    """``event.out`` consumer: forward to the configured webhook, if any."""
    if not settings.event_webhook_url:
        return
    envelope = {k: v for k, v in message.items() if k != "__attempt"}
    if not await forward_event(envelope):
        raise WebhookDeliveryError(str(envelope.get("type", "")))


class WebhookDeliveryError(Exception):
    """Event could not be delivered; the queue retries or dead-letters it."""
