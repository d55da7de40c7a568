import os

# Settings are read at import time; point them at an isolated in-memory database.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TELEGRAM_WEBHOOK_SECRET"] = ""
os.environ["ALERT_BOT_TOKEN"] = ""
os.environ["ALERT_CHAT_ID"] = ""

from unittest.mock import AsyncMock, Mock  # noqa: E402

import pytest  # noqa: E402

from crmsync.database import Base, SessionLocal, engine, init_db  # noqa: E402
from crmsync.services.realtime_service import RealtimeBroadcaster  # noqa: E402


@pytest.fixture
def db():
    """Real SQLite session; tables are recreated for every test."""
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def telegram():
    """TelegramService double: every call succeeds."""
    service = Mock()
    service.send_message = AsyncMock(return_value={"ok": True, "result": {"message_id": 9001}})
    service.get_file = AsyncMock(return_value="voice/file_1.oga")
    service.download_file = AsyncMock(return_value=b"OggS\x00fake")
    return service


@pytest.fixture
def relay():
    relay = Mock()
    relay.relay = AsyncMock(return_value="http://localhost:8000/media/1/abc_file_1.oga")
    return relay


@pytest.fixture
def broadcaster():
    broadcaster = Mock(spec=RealtimeBroadcaster)
    broadcaster.publish = AsyncMock(return_value=1)
    return broadcaster


class FakeSocket:
    """Stands in for a FastAPI WebSocket in broadcaster tests."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


@pytest.fixture
def fake_socket():
    return FakeSocket


@pytest.fixture
def make_update():
    """Build a raw Telegram update dict for a private chat."""

    def _make(user_id=12345, message_id=1, text=None, first_name="Иван", is_bot=False, chat_type="private", **extra):
        message = {
            "message_id": message_id,
            "date": 1702000000,
            "chat": {"id": user_id, "type": chat_type},
            "from": {"id": user_id, "is_bot": is_bot, "first_name": first_name},
        }
        if text is not None:
            message["text"] = text
        message.update(extra)
        return {"update_id": 100000 + message_id, "message": message}

    return _make


VOICE = {"file_id": "voice-file-1", "file_unique_id": "u1", "duration": 3, "mime_type": "audio/ogg"}
PHOTO = [
    {"file_id": "photo-small", "file_unique_id": "p1", "width": 90, "height": 90},
    {"file_id": "photo-large", "file_unique_id": "p2", "width": 1280, "height": 960},
]
DOCUMENT = {"file_id": "doc-1", "file_unique_id": "d1", "file_name": "invoice.pdf", "mime_type": "application/pdf"}


@pytest.fixture
def voice_payload():
    return dict(VOICE)


@pytest.fixture
def photo_payload():
    return [dict(size) for size in PHOTO]


@pytest.fixture
def document_payload():
    return dict(DOCUMENT)
