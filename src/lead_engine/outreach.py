"""Glue for the email-outreach vendor: claim links in, funnel webhooks out."""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
from typing import Any, Optional

from .claims import FunnelEvent
from .config import load_config

logger = logging.getLogger(__name__)

CLAIM_URL_TOKEN_RE = re.compile(r"/claim/([a-z0-9]{8,})", re.IGNORECASE)

EVENT_ALIASES: dict[str, FunnelEvent] = {
    "email.sent": FunnelEvent.SENT,
    "sent": FunnelEvent.SENT,
    "email.opened": FunnelEvent.OPENED,
    "open": FunnelEvent.OPENED,
    "opened": FunnelEvent.OPENED,
    "email.clicked": FunnelEvent.CLICKED,
    "click": FunnelEvent.CLICKED,
    "clicked": FunnelEvent.CLICKED,
    "email.bounced": FunnelEvent.BOUNCED,
    "bounce": FunnelEvent.BOUNCED,
    "bounced": FunnelEvent.BOUNCED,
    "email.unsubscribed": FunnelEvent.UNSUBSCRIBED,
    "unsubscribe": FunnelEvent.UNSUBSCRIBED,
    "unsubscribed": FunnelEvent.UNSUBSCRIBED,
}


def claim_url(token: str) -> str:
    return f"{load_config().base_url}/claim/{token}"


def parse_event_name(name: Optional[str]) -> Optional[FunnelEvent]:
    if not name:
        return None
    event = EVENT_ALIASES.get(name.strip().lower())
    if event is None:
        logger.info("Ignoring unknown outreach event %r", name)
    return event


def _token_from_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    match = CLAIM_URL_TOKEN_RE.search(value)
    return match.group(1).lower() if match else None


def extract_claim_token(payload: dict) -> Optional[str]:
    """Find the claim token in a webhook payload.

    Explicit metadata wins; otherwise the token is pulled out of a claim link
    embedded in the email field or body. Providers that wrap the message in a
    ``data`` object are searched there too.
    """
    data = payload.get("data")
    if isinstance(data, dict):
        token = extract_claim_token(data)
        if token:
            return token

    metadata = payload.get("metadata") or {}
    if isinstance(metadata, dict):
        token = metadata.get("claim_token")
        if not token and isinstance(metadata.get("custom_data"), dict):
            token = metadata["custom_data"].get("claim_token")
        if isinstance(token, str) and token.strip():
            return token.strip().lower()

    for key in ("email", "body", "link", "url"):
        token = _token_from_text(payload.get(key))
        if token:
            return token
    return None


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """HMAC-SHA256 hex digest of the raw request body, compared in constant time."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.strip().lower(), expected)
