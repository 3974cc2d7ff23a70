from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import DEFAULT_WEBHOOK_TIMEOUT_SECONDS

COLOR_GOOD = "good"
COLOR_WARNING = "warning"
COLOR_DANGER = "danger"
COLORS = (COLOR_GOOD, COLOR_WARNING, COLOR_DANGER)

logger = logging.getLogger(__name__)


def build_payload(message: str, color: str) -> dict[str, Any]:
    return {"attachments": [{"fallback": message, "color": color, "text": message}]}


def send_notification(
    webhook_url: str | None,
    message: str,
    *,
    color: str = COLOR_GOOD,
    timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
    http_client: httpx.Client | None = None,
) -> bool:
    """Post ``message`` to the webhook. Best effort: failures are logged, never raised."""
    if not webhook_url or not message:
        return False
    if color not in COLORS:
        raise ValueError(f"color must be one of {', '.join(COLORS)}")

    try:
        if http_client is None:
            with httpx.Client(timeout=timeout_seconds) as owned_client:
                response = owned_client.post(webhook_url, json=build_payload(message, color))
        else:
            response = http_client.post(webhook_url, json=build_payload(message, color))
        response.raise_for_status()
    except httpx.HTTPError as error:
        logger.warning("Failed to send notification: %s", error)
        return False

    logger.debug("Notification sent (%s)", color)
    return True
