"""
Telegram webhook ingestion pipeline.

    update -> classify -> dedup receipt -> [debounce] -> resolve -> relay -> persist -> commit -> publish -> ack

Text is coalesced per sender by the debounce buffer; attachments are processed
immediately. Redelivered updates are recognized by their inbound receipt and by
the (thread key, channel message id) uniqueness of stored messages.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crmsync.database import SessionLocal, dialect_insert
from crmsync.logging_config import bind_logger, get_logger
from crmsync.models import InboundReceipt, Order
from crmsync.schemas.telegram import TelegramMessage, TelegramUpdate
from crmsync.services.alert_service import alert_error
from crmsync.services.attachment_service import AttachmentRelay, media_content
from crmsync.services.conversation_service import ResolvedConversation, resolve_conversation
from crmsync.services.debounce_service import DebounceBuffer, DebounceStore, Fragment, join_fragments
from crmsync.services.message_service import PersistResult, persist_message, serialize_message, serialize_order
from crmsync.services.realtime_service import MESSAGE_CREATED, THREAD_UPDATED, RealtimeBroadcaster
from crmsync.services.telegram_service import TelegramService

logger = get_logger("ingest_service")

GREETING_TEXT = "Привет! Я бот поддержки CRM системы. Напишите ваше сообщение, и менеджер свяжется с вами."
HELP_TEXT = (
    "Напишите сообщение, отправьте голосовое, фото, видео или файл. "
    "Менеджер ответит вам в этом чате."
)
ACK_TEXT = "Ваше сообщение отправлено менеджеру. Ожидайте ответа."
ERROR_TEXT = "Произошла ошибка при отправке сообщения. Попробуйте позже."

COMMAND_REPLIES = {
    "/start": GREETING_TEXT,
    "/help": HELP_TEXT,
}

CHANNEL = "telegram"


class ResolutionError(Exception):
    """Conversation could not be resolved; the update must not be acknowledged."""

    def __init__(self, error: str, code: str):
        self.error = error
        self.code = code
        super().__init__(f"{code}: {error}")


class BufferingError(Exception):
    """Text fragment could not be buffered; no receipt was kept, so redelivery is processed."""


@dataclass
class IngestOutcome:
    status: str  # ignored, command, skipped, duplicate, buffered, persisted
    thread_key: Optional[int] = None
    message_id: Optional[int] = None
    detail: Optional[str] = None


@dataclass
class MediaRef:
    file_id: str
    mime_type: Optional[str]
    file_name: Optional[str] = None


def classify(message: TelegramMessage) -> str:
    """ignored, command, text, voice, image, video or file."""
    if message.from_user is None or message.from_user.is_bot:
        return "ignored"
    if message.chat.type != "private":
        return "ignored"
    if message.voice:
        return "voice"
    if message.photo:
        return "image"
    if message.video:
        return "video"
    if message.document:
        return "file"
    if message.text is not None:
        return "command" if message.text.startswith("/") else "text"
    return "ignored"


def media_ref(message: TelegramMessage) -> Optional[MediaRef]:
    if message.voice:
        return MediaRef(message.voice.file_id, message.voice.mime_type or "audio/ogg")
    if message.photo:
        largest = max(message.photo, key=lambda size: size.width * size.height)
        return MediaRef(largest.file_id, "image/jpeg")
    if message.video:
        return MediaRef(message.video.file_id, message.video.mime_type or "video/mp4", message.video.file_name)
    if message.document:
        return MediaRef(message.document.file_id, message.document.mime_type, message.document.file_name)
    return None


def parse_command(text: str) -> str:
    """'/start@crm_bot payload' -> '/start'."""
    head = text.strip().split(maxsplit=1)[0] if text.strip() else ""
    return head.split("@", 1)[0].lower()


class TelegramIngestor:
    def __init__(
        self,
        telegram: TelegramService,
        relay: AttachmentRelay,
        broadcaster: RealtimeBroadcaster,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        debounce_enabled: bool = True,
        debounce_window_seconds: float = 3.0,
        debounce_store: Optional[DebounceStore] = None,
    ):
        self.telegram = telegram
        self.relay = relay
        self.broadcaster = broadcaster
        self.session_factory = session_factory
        self.debounce: Optional[DebounceBuffer] = None
        if debounce_enabled:
            self.debounce = DebounceBuffer(
                self.flush_text,
                store=debounce_store,
                window_seconds=debounce_window_seconds,
                on_error=self._on_flush_error,
            )

    # --- receipts ---

    def _already_received(self, db: Session, external_user_id: int, channel_message_id: int) -> bool:
        return (
            db.query(InboundReceipt.id)
            .filter(
                InboundReceipt.channel == CHANNEL,
                InboundReceipt.external_user_id == external_user_id,
                InboundReceipt.channel_message_id == channel_message_id,
            )
            .first()
            is not None
        )

    def _claim_receipt(self, db: Session, external_user_id: int, channel_message_id: int) -> bool:
        """Record the provider event. False when it was already recorded."""
        stmt = (
            dialect_insert(db, InboundReceipt)
            .values(channel=CHANNEL, external_user_id=external_user_id, channel_message_id=channel_message_id)
            .on_conflict_do_nothing(index_elements=["channel", "external_user_id", "channel_message_id"])
        )
        return db.execute(stmt).rowcount > 0

    # --- entry point ---

    async def ingest(self, update: TelegramUpdate, db: Session) -> IngestOutcome:
        message = update.message
        if message is None:
            return IngestOutcome("ignored", detail="no message")

        kind = classify(message)
        if kind == "ignored":
            return IngestOutcome("ignored", detail="not a private user message")

        user = message.from_user
        log = bind_logger("ingest_service", external_user_id=user.id, channel_message_id=message.message_id)

        if kind == "command":
            return await self._handle_command(message)

        if kind == "text":
            if not message.text.strip():
                return IngestOutcome("skipped", detail="empty text")
            if self.debounce is None:
                return await self._ingest_immediate(db, message, kind)
            if not self._claim_receipt(db, user.id, message.message_id):
                db.rollback()
                log.info("Duplicate text fragment ignored")
                return IngestOutcome("duplicate")
            # receipt stays uncommitted until the fragment is in the store
            try:
                await self.debounce.on_fragment(
                    user.id,
                    message.text,
                    message.message_id,
                    display_name=user.display_name or None,
                    reply_to_channel_message_id=message.reply_to_message.message_id if message.reply_to_message else None,
                )
            except Exception as e:
                db.rollback()
                log.error("Buffering text fragment failed", context={"error": str(e)}, exc_info=True)
                raise BufferingError(str(e)) from e
            db.commit()
            return IngestOutcome("buffered")

        return await self._ingest_immediate(db, message, kind)

    async def _handle_command(self, message: TelegramMessage) -> IngestOutcome:
        command = parse_command(message.text)
        reply = COMMAND_REPLIES.get(command)
        if reply:
            await self.telegram.send_message(message.chat.id, reply)
        logger.info(
            "Bot command handled" if reply else "Unknown bot command ignored",
            extra={"context": {"external_user_id": message.from_user.id, "command": command}},
        )
        return IngestOutcome("command", detail=command)

    async def _resolve(self, db: Session, external_user_id: int, display_name: Optional[str]) -> ResolvedConversation:
        resolved = resolve_conversation(db, external_user_id, display_name)
        if not resolved.ok:
            await alert_error(
                "Conversation resolution failed",
                {"external_user_id": external_user_id, "code": resolved.error_code, "error": resolved.error},
            )
            raise ResolutionError(resolved.error or "", resolved.error_code or "unknown")
        return resolved.value

    async def _ingest_immediate(self, db: Session, message: TelegramMessage, kind: str) -> IngestOutcome:
        user = message.from_user
        log = bind_logger("ingest_service", external_user_id=user.id, channel_message_id=message.message_id)

        if self._already_received(db, user.id, message.message_id):
            log.info("Duplicate update ignored", context={"kind": kind})
            return IngestOutcome("duplicate")

        conversation = await self._resolve(db, user.id, user.display_name or None)
        # contact and thread are kept even if the relay below fails
        db.commit()
        if conversation.created_order:
            await self._publish_thread_created(db, conversation)

        content = message.text
        attachment_url = None
        if kind != "text":
            ref = media_ref(message)
            attachment_url = await self.relay.relay(
                ref.file_id,
                ref.mime_type,
                thread_key=conversation.thread_key,
                file_name=ref.file_name,
            )
            content = media_content(kind, message.caption, attachment_url, ref.file_name)

        try:
            if not self._claim_receipt(db, user.id, message.message_id):
                db.rollback()
                log.info("Concurrent redelivery ignored", context={"thread_key": conversation.thread_key})
                return IngestOutcome("duplicate", thread_key=conversation.thread_key)
            persisted = persist_message(
                db,
                thread_key=conversation.thread_key,
                author_type="client",
                author_name=user.display_name or None,
                content=content,
                channel_message_id=message.message_id,
                message_type=kind,
                attachment_url=attachment_url,
                reply_to_channel_message_id=message.reply_to_message.message_id if message.reply_to_message else None,
                order_id=conversation.order_id,
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            log.error("Persisting inbound message failed", context={"error": str(e)}, exc_info=True)
            raise

        await self._after_persist(persisted, conversation, user.id)
        return IngestOutcome(
            "persisted" if persisted.created else "duplicate",
            thread_key=conversation.thread_key,
            message_id=persisted.message.id,
        )

    async def flush_text(self, external_user_id: int, fragments: list[Fragment]) -> None:
        """Debounce flush: one message for the whole episode, keyed by its first fragment id."""
        display_name = next((f.display_name for f in fragments if f.display_name), None)
        db = self.session_factory()
        try:
            conversation = await self._resolve(db, external_user_id, display_name)
            persisted = persist_message(
                db,
                thread_key=conversation.thread_key,
                author_type="client",
                author_name=display_name,
                content=join_fragments(fragments),
                channel_message_id=fragments[0].channel_message_id,
                message_type="text",
                reply_to_channel_message_id=fragments[0].reply_to_channel_message_id,
                order_id=conversation.order_id,
            )
            db.commit()
            if conversation.created_order:
                await self._publish_thread_created(db, conversation)
            await self._after_persist(persisted, conversation, external_user_id)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    async def _after_persist(self, persisted: PersistResult, conversation: ResolvedConversation, external_user_id: int) -> None:
        if not persisted.created:
            return
        await self.broadcaster.publish(
            MESSAGE_CREATED,
            serialize_message(persisted.message),
            thread_key=conversation.thread_key,
            order_id=conversation.order_id,
        )
        await self._acknowledge(external_user_id)

    async def _publish_thread_created(self, db: Session, conversation: ResolvedConversation) -> None:
        order = db.query(Order).filter(Order.id == conversation.order_id).first()
        if order is None:
            return
        await self.broadcaster.publish(
            THREAD_UPDATED,
            serialize_order(order),
            thread_key=conversation.thread_key,
            order_id=conversation.order_id,
            contact_id=conversation.contact_id,
        )

    async def _acknowledge(self, chat_id: int) -> None:
        result = await self.telegram.send_message(chat_id, ACK_TEXT)
        if not result.get("ok"):
            logger.warning("Acknowledgement not delivered", extra={"context": {"external_user_id": chat_id, "response": result}})

    async def _on_flush_error(self, external_user_id: int, fragments: list[Fragment], error: Exception) -> None:
        context = {
            "external_user_id": external_user_id,
            "fragments": len(fragments),
            "first_channel_message_id": fragments[0].channel_message_id if fragments else None,
            "error": str(error),
        }
        # resolution failures were already alerted by _resolve
        if not isinstance(error, ResolutionError):
            await alert_error("Debounced message flush failed", context)
        await self.telegram.send_message(external_user_id, ERROR_TEXT)

    async def shutdown(self) -> None:
        if self.debounce is not None:
            await self.debounce.flush_all()
