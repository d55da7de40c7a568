"""Operational alerts delivered to a Telegram chat of the on-call team."""

from typing import Optional

import httpx
from fastapi.concurrency import run_in_threadpool

from crmsync.config import settings
from crmsync.logging_config import get_logger

logger = get_logger("alert_service")

LEVEL_MARKS = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_MARKS.get(level, '📢')} *{level}* crmsync\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"
    return text


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to the alert chat.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict (external user id, thread key, ...)

    Returns:
        True if Telegram accepted the alert
    """
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning("Alert not configured", extra={"context": {"level": level, "alert": message}})
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"{settings.telegram_api_base}/bot{settings.alert_bot_token}/sendMessage",
                json={
                    "chat_id": settings.alert_chat_id,
                    "text": format_alert(level, message, context),
                    "parse_mode": "Markdown",
                },
            )
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error("Failed to send alert", extra={"context": {"error": str(e)}})
        return False


async def alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """send_alert for coroutines: the blocking HTTP call runs on the threadpool."""
    return await run_in_threadpool(send_alert, level, message, context)


async def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return await alert("ERROR", message, context)
