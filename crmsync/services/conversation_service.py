import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crmsync.config import settings
from crmsync.database import dialect_insert
from crmsync.logging_config import get_logger
from crmsync.models import Contact, Order
from crmsync.services.order_status import OrderStatus, UnknownStatusError, is_terminal, parse_status
from crmsync.services.result import Result

logger = get_logger("conversation_service")

THREAD_KEY_ATTEMPTS = 5


@dataclass
class ResolvedConversation:
    contact_id: int
    order_id: int
    thread_key: int
    created_contact: bool = False
    created_order: bool = False


def generate_thread_key() -> int:
    """16-digit numeric thread key: epoch milliseconds followed by three random digits.

    Stays below 2**53 so JavaScript clients read it without rounding.
    """
    return int(time.time() * 1000) * 1000 + secrets.randbelow(1000)


def default_contact_name(external_user_id: int) -> str:
    return f"Пользователь {external_user_id}"


def get_or_create_contact(
    db: Session,
    external_user_id: int,
    display_name: Optional[str] = None,
) -> tuple[Contact, bool]:
    """
    Find contact by Telegram user id or create it in one statement.

    The returned row is locked for the rest of the transaction so that the
    active-thread check of concurrent resolvers for the same contact serializes.
    """
    now = datetime.now(timezone.utc)
    stmt = (
        dialect_insert(db, Contact)
        .values(
            name=display_name or default_contact_name(external_user_id),
            telegram_user_id=external_user_id,
            status="active",
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["telegram_user_id"])
    )
    created = db.execute(stmt).rowcount > 0

    contact = (
        db.query(Contact)
        .filter(Contact.telegram_user_id == external_user_id)
        .with_for_update()
        .one()
    )
    return contact, created


def find_active_order(db: Session, contact_id: int, lookback: int) -> Optional[Order]:
    """Newest non-terminal order among the contact's last ``lookback`` orders."""
    recent = (
        db.query(Order)
        .filter(Order.contact_id == contact_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(lookback)
        .all()
    )
    for order in recent:
        if not is_terminal(order.status):
            return order
    return None


def create_order(db: Session, contact_id: int) -> Order:
    """Insert a new unsorted thread, regenerating the thread key on collision."""
    last_error: Optional[IntegrityError] = None
    for attempt in range(1, THREAD_KEY_ATTEMPTS + 1):
        now = datetime.now(timezone.utc)
        order = Order(
            contact_id=contact_id,
            main_id=generate_thread_key(),
            status=OrderStatus.UNSORTED.value,
            source="telegram_bot",
            created_at=now,
            updated_at=now,
        )
        try:
            with db.begin_nested():
                db.add(order)
                db.flush()
            return order
        except IntegrityError as e:
            last_error = e
            logger.warning(
                "Thread key collision, regenerating",
                extra={"context": {"contact_id": contact_id, "main_id": order.main_id, "attempt": attempt}},
            )
    raise last_error


def get_or_create_active_order(db: Session, contact: Contact, lookback: int) -> tuple[Order, bool]:
    order = find_active_order(db, contact.id, lookback)
    if order:
        return order, False
    return create_order(db, contact.id), True


def resolve_conversation(
    db: Session,
    external_user_id: int,
    display_name: Optional[str] = None,
    *,
    lookback: Optional[int] = None,
) -> Result[ResolvedConversation]:
    """Map a Telegram user id to its contact and active thread, creating both when absent."""
    if isinstance(external_user_id, bool) or not isinstance(external_user_id, int) or external_user_id <= 0:
        logger.warning(
            "Rejecting invalid external user id",
            extra={"context": {"external_user_id": repr(external_user_id)}},
        )
        return Result.failure(f"Invalid external user id: {external_user_id!r}", "invalid_external_id")

    try:
        contact, created_contact = get_or_create_contact(db, external_user_id, display_name)
        order, created_order = get_or_create_active_order(db, contact, lookback or settings.resolver_lookback)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "Conversation resolution failed",
            extra={"context": {"external_user_id": external_user_id, "error": str(e)}},
            exc_info=True,
        )
        return Result.failure(str(e), "db_error")

    if created_contact or created_order:
        logger.info(
            "Conversation resolved with new rows",
            extra={
                "context": {
                    "external_user_id": external_user_id,
                    "contact_id": contact.id,
                    "thread_key": order.main_id,
                    "created_contact": created_contact,
                    "created_order": created_order,
                }
            },
        )

    return Result.success(
        ResolvedConversation(
            contact_id=contact.id,
            order_id=order.id,
            thread_key=order.main_id,
            created_contact=created_contact,
            created_order=created_order,
        )
    )


def set_order_status(db: Session, order_id: int, status: str) -> Result[Order]:
    """Manual status transition. Any known status may follow any other."""
    try:
        new_status = parse_status(status)
    except UnknownStatusError as e:
        return Result.failure(str(e), "unknown_status")

    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        return Result.failure(f"Order {order_id} not found", "not_found")

    old_status = order.status
    order.status = new_status.value
    order.updated_at = datetime.now(timezone.utc)
    db.flush()

    logger.info(
        "Order status changed",
        extra={"context": {"order_id": order_id, "thread_key": order.main_id, "old": old_status, "new": order.status}},
    )
    return Result.success(order)
