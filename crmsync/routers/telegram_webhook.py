import json
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crmsync.config import settings
from crmsync.database import get_db
from crmsync.logging_config import get_logger
from crmsync.schemas.telegram import TelegramUpdate
from crmsync.services.ingest_service import BufferingError, ResolutionError, TelegramIngestor

logger = get_logger("telegram_webhook")

router = APIRouter()


def get_ingestor(request: Request) -> TelegramIngestor:
    return request.app.state.ingestor


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            return json.loads(raw.decode(enc, errors="replace"))
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload")
    return None


def verify_secret(token: Optional[str]) -> None:
    expected = settings.telegram_webhook_secret
    if not expected:
        return
    if not token or not secrets.compare_digest(token, expected):
        logger.warning("Telegram webhook secret mismatch")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


@router.post("/telegram-webhook")
async def handle_telegram_webhook(
    request: Request,
    db: Session = Depends(get_db),
    ingestor: TelegramIngestor = Depends(get_ingestor),
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
):
    """
    Accept a Telegram update.

    200 with an empty body for accepted, ignored and duplicate updates.
    500 when the conversation or message could not be stored, so Telegram redelivers.
    """
    verify_secret(x_telegram_bot_api_secret_token)

    body = await parse_telegram_update(request)
    if not isinstance(body, dict):
        return Response(status_code=200)

    try:
        update = TelegramUpdate(**body)
    except ValidationError as e:
        logger.warning("Telegram update validation failed", extra={"context": {"error": str(e)}})
        return Response(status_code=200)

    try:
        outcome = await ingestor.ingest(update, db)
    except (BufferingError, ResolutionError, SQLAlchemyError) as e:
        logger.error(
            "Telegram update processing failed",
            extra={"context": {"update_id": update.update_id, "error": str(e)}},
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail="Update processing failed")

    logger.info(
        "Telegram update processed",
        extra={
            "context": {
                "update_id": update.update_id,
                "status": outcome.status,
                "thread_key": outcome.thread_key,
                "message_id": outcome.message_id,
            }
        },
    )
    return Response(status_code=200)


# Path used by the original bot deployment
@router.post("/api/bot/webhook")
async def handle_bot_webhook(
    request: Request,
    db: Session = Depends(get_db),
    ingestor: TelegramIngestor = Depends(get_ingestor),
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
):
    return await handle_telegram_webhook(request, db, ingestor, x_telegram_bot_api_secret_token)
