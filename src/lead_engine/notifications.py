"""Operator alerts via ntfy.sh.

Set NTFY_TOPIC in .env to receive alerts on your phone (https://ntfy.sh).
Nothing is sent when the topic is unset.

Sends notifications for:
- Failed batch jobs
- Claim token entropy exhaustion (fatal configuration error)
- Duplicate merge summaries
"""
from __future__ import annotations

import logging
from typing import Optional

import requests

from .config import load_config

logger = logging.getLogger(__name__)


def send_notification(
    title: str,
    message: str,
    priority: str = "default",
    tags: Optional[list[str]] = None,
) -> bool:
    """Send a push notification via ntfy.sh.

    Returns True if sent, False if not configured or failed.
    """
    config = load_config()
    if not config.ntfy_topic:
        return False

    url = f"{config.ntfy_server.rstrip('/')}/{config.ntfy_topic}"
    headers: dict[str, str] = {
        "Title": title,
        "Priority": priority,
    }
    if tags:
        headers["Tags"] = ",".join(tags)

    try:
        resp = requests.post(
            url,
            data=message.encode("utf-8"),
            headers=headers,
            timeout=10,
        )
        if resp.ok:
            logger.debug("Notification sent: %s", title)
            return True
        logger.warning("ntfy returned %d: %s", resp.status_code, resp.text[:200])
        return False
    except requests.RequestException as exc:
        logger.warning("ntfy notification failed: %s", exc)
        return False


def notify_error(job_name: str, error: str) -> bool:
    return send_notification(
        title=f"Lead engine error: {job_name}",
        message=error[:500],
        priority="high",
        tags=["warning", "x"],
    )


def notify_configuration_error(error: str) -> bool:
    """Token generation ran out of attempts; someone has to look at this."""
    return send_notification(
        title="Claim token generation exhausted",
        message=error[:500],
        priority="urgent",
        tags=["rotating_light"],
    )


def notify_merge_summary(identity_key: str, groups: int, deleted: int) -> bool:
    return send_notification(
        title=f"Duplicate merge ({identity_key})",
        message=f"Merged {groups} groups, deleted {deleted} duplicate listings",
        tags=["broom"],
    )
