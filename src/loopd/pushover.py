"""Pushover notification client."""

from __future__ import annotations

import logging

import httpx

from loopd.config import PushoverConfig
from loopd.errors import PushDeliveryFailed

log = logging.getLogger(__name__)

API_URL = "https://api.pushover.net/1/messages.json"
MAX_TITLE = 250
MAX_MESSAGE = 1024
PRIORITY_RANGE = (-2, 1)
DEFAULT_TIMEOUT = 10.0


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def build_payload(cfg: PushoverConfig, title: str, message: str, priority: int = 0) -> dict[str, str]:
    lo, hi = PRIORITY_RANGE
    if not lo <= priority <= hi:
        raise ValueError(f"priority must be between {lo} and {hi}")
    return {
        "token": cfg.app_token,
        "user": cfg.user_key,
        "title": _clip(title.strip() or "loopd", MAX_TITLE),
        "message": _clip(message.strip() or title.strip() or "(no message)", MAX_MESSAGE),
        "priority": str(priority),
    }


def send(
    cfg: PushoverConfig,
    title: str,
    message: str,
    priority: int = 0,
    *,
    client: httpx.Client | None = None,
) -> None:
    """Deliver one notification.  Raises PushDeliveryFailed on any failure."""
    if not cfg.configured:
        raise PushDeliveryFailed("pushover credentials are not configured")
    payload = build_payload(cfg, title, message, priority)
    owns_client = client is None
    http = client or httpx.Client(timeout=DEFAULT_TIMEOUT)
    try:
        resp = http.post(API_URL, data=payload)
    except httpx.HTTPError as exc:
        raise PushDeliveryFailed(f"pushover request failed: {exc}") from exc
    finally:
        if owns_client:
            http.close()
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if resp.status_code != 200 or body.get("status") != 1:
        errors = "; ".join(body.get("errors") or []) or resp.text[:200]
        raise PushDeliveryFailed(f"pushover rejected notification (HTTP {resp.status_code}): {errors}")
    log.info("Pushover notification sent: %s", payload["title"])
