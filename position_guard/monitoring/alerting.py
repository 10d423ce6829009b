"""
Lightweight alerting for events an operator must see.

Sends notifications via webhook (Telegram, Discord or generic JSON).
Configure via environment variables:
  ALERT_WEBHOOK_URL  - Telegram bot URL or Discord webhook URL
  ALERT_CHAT_ID      - Telegram chat ID (required for Telegram, ignored for Discord)

If no webhook is configured, alerts are logged but not sent.
"""
import os
from datetime import datetime, timezone
from typing import Dict

import aiohttp

from position_guard.monitoring.logger import get_logger

logger = get_logger(__name__)

# Rate limit: max 1 alert per event type per 5 minutes
_last_alert_times: Dict[str, datetime] = {}
_RATE_LIMIT_SECONDS = 300


def _is_telegram(url: str) -> bool:
    return "api.telegram.org" in url


def _is_discord(url: str) -> bool:
    return "discord.com/api/webhooks" in url or "discordapp.com/api/webhooks" in url


def reset_rate_limits() -> None:
    _last_alert_times.clear()


async def send_alert(event_type: str, message: str, urgent: bool = False) -> None:
    """
    Send an alert notification. Never raises.

    Args:
        event_type: Type of event (e.g., "LEDGER_DIVERGENCE", "CLOSE_ORDER_FAILED")
        message: Human-readable message
        urgent: If True, bypass rate limiting
    """
    webhook_url = os.environ.get("ALERT_WEBHOOK_URL", "").strip()
    chat_id = os.environ.get("ALERT_CHAT_ID", "").strip()

    if not webhook_url:
        logger.warning("ALERT", event_type=event_type, message=message, delivered=False)
        return

    now = datetime.now(timezone.utc)
    if not urgent:
        last = _last_alert_times.get(event_type)
        if last and (now - last).total_seconds() < _RATE_LIMIT_SECONDS:
            return
    _last_alert_times[event_type] = now

    timestamp = now.strftime("%H:%M:%S UTC")
    formatted = f"[{event_type}] {timestamp}\n{message}"

    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
            if _is_telegram(webhook_url):
                payload = {"chat_id": chat_id, "text": formatted}
                async with session.post(webhook_url, json=payload) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        logger.warning("Telegram alert failed", status=resp.status, body=body[:200])
            elif _is_discord(webhook_url):
                payload = {"content": formatted}
                async with session.post(webhook_url, json=payload) as resp:
                    if resp.status not in (200, 204):
                        body = await resp.text()
                        logger.warning("Discord alert failed", status=resp.status, body=body[:200])
            else:
                payload = {
                    "event_type": event_type,
                    "message": message,
                    "timestamp": now.isoformat(),
                    "urgent": urgent,
                }
                async with session.post(webhook_url, json=payload) as resp:
                    if resp.status >= 400:
                        logger.warning("Webhook alert failed", status=resp.status)
    except Exception as e:
        # Alert failures must never break a monitor tick
        logger.warning("Alert send failed (non-fatal)", event_type=event_type, error=str(e))
