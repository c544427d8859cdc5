import json
import logging
import os
from typing import Optional

import requests

logger = logging.getLogger(__name__)


def _default_webhook() -> Optional[str]:
    return os.getenv("OPERATOR_ALERTS_WEBHOOK_URL") or os.getenv("DISCORD_ALERTS_URL")


def send_operator_alert(
    title: str,
    body: str,
    *,
    webhook_url: Optional[str] = None,
    username: Optional[str] = "courtatlas",
) -> bool:
    """
    Post an operator alert to a Discord-compatible webhook.

    - title: short headline (bolded)
    - body:  plain-text or markdown details
    Returns True if the webhook accepted it. Never raises: importer flows call
    this on their failure paths.
    """
    url = webhook_url or _default_webhook()
    content = f"**{title}**\n{body}"

    if not url:
        logger.warning("[alerts] No webhook configured. Content:\n%s", content)
        return False

    payload = {"content": content[:1900]}
    if username:
        payload["username"] = username

    try:
        resp = requests.post(
            url,
            data=json.dumps(payload),
            headers={"Content-Type": "application/json"},
            timeout=10,
        )
    except requests.RequestException:
        logger.exception("[alerts] Exception while sending operator alert %r", title)
        return False

    if resp.status_code >= 400:
        logger.error("[alerts] Failed to send %r: %s %s", title, resp.status_code, resp.text[:200])
        return False
    logger.info("[alerts] Sent %r", title)
    return True
