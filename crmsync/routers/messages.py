from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from crmsync.database import get_db
from crmsync.logging_config import get_logger
from crmsync.models import Contact, Message, Order
from crmsync.schemas.message import (
    MessageOut,
    MessagesListResponse,
    OrderOut,
    ReactionRequest,
    SendMessageRequest,
    StatusUpdateRequest,
)
from crmsync.services.conversation_service import set_order_status
from crmsync.services.message_service import (
    DEFAULT_PAGE_SIZE,
    add_reaction,
    list_thread_messages,
    persist_message,
    serialize_message,
    serialize_order,
)
from crmsync.services.realtime_service import MESSAGE_CREATED, MESSAGE_UPDATED, THREAD_UPDATED, RealtimeBroadcaster
from crmsync.services.result import ResultError
from crmsync.services.telegram_service import TelegramService

logger = get_logger("messages_router")

router = APIRouter(prefix="/api/orders", tags=["messages"])

ERROR_STATUS = {"not_found": 404, "unknown_status": 400}


def get_telegram(request: Request) -> TelegramService:
    return request.app.state.telegram


def get_broadcaster(request: Request) -> RealtimeBroadcaster:
    return request.app.state.broadcaster


def _get_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.get("/{order_id}/messages", response_model=MessagesListResponse)
async def get_order_messages(
    order_id: int,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    order = _get_order(db, order_id)
    messages, total = list_thread_messages(db, order, limit=limit, offset=offset)
    return MessagesListResponse(
        messages=[MessageOut.model_validate(m) for m in messages],
        total=total,
        main_id=order.main_id,
    )


@router.post("/{order_id}/messages", response_model=MessageOut)
async def send_order_message(
    order_id: int,
    body: SendMessageRequest,
    db: Session = Depends(get_db),
    telegram: TelegramService = Depends(get_telegram),
    broadcaster: RealtimeBroadcaster = Depends(get_broadcaster),
):
    """Operator reply: deliver to Telegram first, then store and broadcast."""
    order = _get_order(db, order_id)
    if body.thread_key is not None and body.thread_key != order.main_id:
        raise HTTPException(status_code=409, detail="Thread key does not match order")

    contact = db.query(Contact).filter(Contact.id == order.contact_id).first()
    if not contact or not contact.telegram_user_id:
        raise HTTPException(status_code=409, detail="Order has no Telegram contact")

    result = await telegram.send_message(
        contact.telegram_user_id,
        body.content,
        reply_to_message_id=body.reply_to_message_id,
    )
    if not result.get("ok"):
        logger.error(
            "Operator message not delivered to Telegram",
            extra={"context": {"order_id": order_id, "thread_key": order.main_id, "response": result}},
        )
        raise HTTPException(status_code=502, detail="Telegram delivery failed")

    sent = result.get("result") or {}
    persisted = persist_message(
        db,
        thread_key=order.main_id,
        author_type="operator",
        content=body.content,
        channel_message_id=sent.get("message_id"),
        message_type="text",
        reply_to_channel_message_id=body.reply_to_message_id,
        order_id=order.id,
        client_ref=body.client_ref,
    )
    db.commit()

    payload = serialize_message(persisted.message)
    if persisted.created:
        await broadcaster.publish(MESSAGE_CREATED, payload, thread_key=order.main_id, order_id=order.id)
    return payload


@router.post("/{order_id}/messages/{message_id}/reactions", response_model=MessageOut)
async def toggle_reaction(
    order_id: int,
    message_id: int,
    body: ReactionRequest,
    db: Session = Depends(get_db),
    broadcaster: RealtimeBroadcaster = Depends(get_broadcaster),
):
    order = _get_order(db, order_id)
    try:
        message: Message = add_reaction(db, message_id, body.emoji, body.author, order=order).unwrap()
    except ResultError as e:
        raise HTTPException(status_code=ERROR_STATUS.get(e.code, 400), detail=e.error)
    db.commit()

    payload = serialize_message(message)
    await broadcaster.publish(MESSAGE_UPDATED, payload, thread_key=message.main_id, order_id=order.id)
    return payload


@router.patch("/{order_id}/status", response_model=OrderOut)
async def update_order_status(
    order_id: int,
    body: StatusUpdateRequest,
    db: Session = Depends(get_db),
    broadcaster: RealtimeBroadcaster = Depends(get_broadcaster),
):
    try:
        order = set_order_status(db, order_id, body.status).unwrap()
    except ResultError as e:
        raise HTTPException(status_code=ERROR_STATUS.get(e.code, 400), detail=e.error)
    db.commit()

    payload = serialize_order(order)
    await broadcaster.publish(
        THREAD_UPDATED,
        payload,
        thread_key=order.main_id,
        order_id=order.id,
        contact_id=order.contact_id,
    )
    return payload
