from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from crmsync.config import settings
from crmsync.database import get_db, init_db
from crmsync.logging_config import get_logger, setup_logging
from crmsync.routers import media, messages, realtime, telegram_webhook
from crmsync.services.attachment_service import AttachmentRelay, LocalMediaStorage
from crmsync.services.debounce_service import InMemoryDebounceStore, RedisDebounceStore
from crmsync.services.ingest_service import TelegramIngestor
from crmsync.services.realtime_service import RealtimeBroadcaster
from crmsync.services.telegram_service import TelegramService

setup_logging(settings.log_level, debug=settings.debug)
logger = get_logger("main")

app = FastAPI(
    title="CRM Sync API",
    description="Telegram ingestion, message deduplication and realtime fan-out for the CRM",
    version="0.1.0",
    debug=settings.debug,
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(telegram_webhook.router)
app.include_router(messages.router)
app.include_router(media.router)
app.include_router(realtime.router)


def build_debounce_store():
    if settings.debounce_backend == "redis":
        return RedisDebounceStore.from_url(
            settings.redis_url,
            ttl_seconds=settings.debounce_ttl_seconds,
            max_fragments=settings.debounce_max_fragments,
        )
    return InMemoryDebounceStore(
        max_keys=settings.debounce_max_users,
        ttl_seconds=settings.debounce_ttl_seconds,
        max_fragments=settings.debounce_max_fragments,
    )


def build_services(target: FastAPI) -> None:
    """Attach the service graph to ``app.state``."""
    telegram = TelegramService(settings.telegram_bot_token or "", api_base=settings.telegram_api_base)
    storage = LocalMediaStorage(settings.media_storage_dir, settings.public_base_url)
    broadcaster = RealtimeBroadcaster()

    target.state.telegram = telegram
    target.state.media_storage = storage
    target.state.broadcaster = broadcaster
    target.state.ingestor = TelegramIngestor(
        telegram,
        AttachmentRelay(telegram, storage, max_bytes=settings.media_max_bytes),
        broadcaster,
        debounce_enabled=settings.debounce_enabled,
        debounce_window_seconds=settings.debounce_window_seconds,
        debounce_store=build_debounce_store() if settings.debounce_enabled else None,
    )


@app.on_event("startup")
async def on_startup() -> None:
    init_db()
    build_services(app)
    if not settings.telegram_bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN is not set; outbound Telegram calls will fail")
    logger.info(
        "crmsync started",
        extra={
            "context": {
                "debounce_enabled": settings.debounce_enabled,
                "debounce_backend": settings.debounce_backend,
                "debounce_window_seconds": settings.debounce_window_seconds,
            }
        },
    )


@app.on_event("shutdown")
async def on_shutdown() -> None:
    ingestor = getattr(app.state, "ingestor", None)
    if ingestor is not None:
        await ingestor.shutdown()
        logger.info("Pending debounce episodes flushed")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
async def db_check(db: Session = Depends(get_db)):
    """Database connectivity check."""
    db.execute(text("SELECT 1"))
    return {"status": "ok", "database": "connected"}
