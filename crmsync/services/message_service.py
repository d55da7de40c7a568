from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from crmsync.database import dialect_insert
from crmsync.logging_config import get_logger
from crmsync.models import Message, Order, OrderMessage
from crmsync.schemas.message import MessageOut, OrderOut
from crmsync.services.result import Result

logger = get_logger("message_service")

AUTHOR_TYPES = ("client", "operator", "bot", "system")
MESSAGE_TYPES = ("text", "voice", "image", "file", "video")

DEFAULT_PAGE_SIZE = 200


@dataclass
class PersistResult:
    message: Message
    created: bool


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _link_order(db: Session, order_id: int, message_id: int) -> None:
    stmt = (
        dialect_insert(db, OrderMessage)
        .values(order_id=order_id, message_id=message_id)
        .on_conflict_do_nothing(index_elements=["order_id", "message_id"])
    )
    db.execute(stmt)


def persist_message(
    db: Session,
    *,
    thread_key: int,
    author_type: str,
    content: Optional[str],
    channel_message_id: Optional[int] = None,
    message_type: str = "text",
    attachment_url: Optional[str] = None,
    reply_to_channel_message_id: Optional[int] = None,
    order_id: Optional[int] = None,
    client_ref: Optional[str] = None,
    author_name: Optional[str] = None,
) -> PersistResult:
    """
    Store a message exactly once per (thread key, channel message id).

    A redelivered channel message returns the stored row with created=False.
    Messages without a channel message id (operator sends) are always inserted.
    The transaction is left open: callers commit, then publish created rows.
    """
    if author_type not in AUTHOR_TYPES:
        raise ValueError(f"Unknown author type: {author_type}")
    if message_type not in MESSAGE_TYPES:
        raise ValueError(f"Unknown message type: {message_type}")

    values = {
        "main_id": thread_key,
        "author_type": author_type,
        "author_name": author_name,
        "content": content,
        "message_type": message_type,
        "message_id_tg": channel_message_id,
        "reply_to_mess_id_tg": reply_to_channel_message_id,
        "attachment_url": attachment_url,
        "client_ref": client_ref,
        "reactions": [],
        "created_at": datetime.now(timezone.utc),
    }

    if channel_message_id is None:
        message = Message(**values)
        db.add(message)
        db.flush()
        created = True
    else:
        stmt = (
            dialect_insert(db, Message)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["main_id", "message_id_tg"])
        )
        created = db.execute(stmt).rowcount > 0
        message = (
            db.query(Message)
            .filter(Message.main_id == thread_key, Message.message_id_tg == channel_message_id)
            .one()
        )

    if order_id is None:
        order = db.query(Order).filter(Order.main_id == thread_key).first()
        order_id = order.id if order else None
    if order_id is not None:
        _link_order(db, order_id, message.id)

    context = {
        "thread_key": thread_key,
        "message_id": message.id,
        "channel_message_id": channel_message_id,
        "author_type": author_type,
    }
    if created:
        logger.info("Message persisted", extra={"context": context})
    else:
        logger.info("Duplicate channel message, returning stored row", extra={"context": context})

    return PersistResult(message=message, created=created)


def list_thread_messages(
    db: Session,
    order: Order,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> tuple[list[Message], int]:
    """Messages of a thread, matched by thread key or by the order link, oldest first."""
    by_key = db.query(Message).filter(Message.main_id == order.main_id).all()
    linked = (
        db.query(Message)
        .join(OrderMessage, OrderMessage.message_id == Message.id)
        .filter(OrderMessage.order_id == order.id)
        .all()
    )

    merged = {message.id: message for message in by_key}
    for message in linked:
        merged.setdefault(message.id, message)

    ordered = sorted(merged.values(), key=lambda m: (_as_utc(m.created_at), m.id))
    return ordered[offset : offset + limit], len(ordered)


def message_in_thread(db: Session, message: Message, order: Order) -> bool:
    """Same thread key, or linked to the order through order_messages."""
    if message.main_id == order.main_id:
        return True
    link = (
        db.query(OrderMessage.id)
        .filter(OrderMessage.order_id == order.id, OrderMessage.message_id == message.id)
        .first()
    )
    return link is not None


def add_reaction(
    db: Session,
    message_id: int,
    emoji: str,
    author: str,
    order: Optional[Order] = None,
) -> Result[Message]:
    """Toggle ``author``'s ``emoji`` reaction. Reactions are the only mutable message field.

    With ``order`` given, a message outside that order's thread counts as not found.
    """
    message = db.query(Message).filter(Message.id == message_id).first()
    if not message:
        return Result.failure(f"Message {message_id} not found", "not_found")
    if order is not None and not message_in_thread(db, message, order):
        logger.warning(
            "Reaction targets message of another thread",
            extra={"context": {"message_id": message_id, "order_id": order.id, "thread_key": order.main_id}},
        )
        return Result.failure(f"Message {message_id} not found in order {order.id}", "not_found")

    reactions = list(message.reactions or [])
    entry = {"emoji": emoji, "author": author}
    if entry in reactions:
        reactions.remove(entry)
    else:
        reactions.append(entry)
    # reassign so the JSON column is flagged dirty
    message.reactions = reactions
    db.flush()

    return Result.success(message)


def serialize_message(message: Message) -> dict:
    return MessageOut.model_validate(message).model_dump(mode="json")


def serialize_order(order: Order) -> dict:
    return OrderOut.model_validate(order).model_dump(mode="json")
