from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from crmsync.database import get_db
from crmsync.main import app
from crmsync.models import Message, Order
from crmsync.services.attachment_service import LocalMediaStorage
from crmsync.services.conversation_service import resolve_conversation
from crmsync.services.message_service import persist_message
from crmsync.services.realtime_service import MESSAGE_CREATED, MESSAGE_UPDATED, THREAD_UPDATED


@pytest.fixture
def client(db, telegram, broadcaster, tmp_path):
    app.state.telegram = telegram
    app.state.broadcaster = broadcaster
    app.state.media_storage = LocalMediaStorage(str(tmp_path), "http://testserver")
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def order(db):
    resolved = resolve_conversation(db, 12345).value
    db.commit()
    return db.query(Order).filter(Order.id == resolved.order_id).one()


class TestListMessages:
    def test_returns_thread_messages_oldest_first(self, client, db, order):
        base = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        db.add(Message(main_id=order.main_id, author_type="client", content="second", created_at=base + timedelta(seconds=5)))
        db.add(Message(main_id=order.main_id, author_type="client", content="first", created_at=base))
        db.commit()

        response = client.get(f"/api/orders/{order.id}/messages")

        assert response.status_code == 200
        body = response.json()
        assert body["main_id"] == order.main_id
        assert body["total"] == 2
        assert [m["content"] for m in body["messages"]] == ["first", "second"]

    def test_unknown_order(self, client):
        assert client.get("/api/orders/999/messages").status_code == 404


class TestSendMessage:
    def test_delivers_stores_and_broadcasts(self, client, db, order, telegram, broadcaster):
        response = client.post(
            f"/api/orders/{order.id}/messages",
            json={"content": "Здравствуйте!", "client_ref": "tmp-1", "reply_to_message_id": 3},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["client_ref"] == "tmp-1"
        assert body["author_type"] == "operator"
        assert body["message_id_tg"] == 9001
        assert body["main_id"] == order.main_id

        telegram.send_message.assert_awaited_once_with(12345, "Здравствуйте!", reply_to_message_id=3)
        broadcaster.publish.assert_awaited_once()
        call = broadcaster.publish.await_args
        assert call.args[0] == MESSAGE_CREATED
        assert call.args[1]["id"] == body["id"]
        assert call.kwargs == {"thread_key": order.main_id, "order_id": order.id}

    def test_telegram_failure_persists_nothing(self, client, db, order, telegram, broadcaster):
        telegram.send_message.return_value = {"ok": False, "error": "Forbidden: bot was blocked by the user"}

        response = client.post(f"/api/orders/{order.id}/messages", json={"content": "Алло"})

        assert response.status_code == 502
        assert db.query(Message).count() == 0
        broadcaster.publish.assert_not_awaited()

    def test_thread_key_mismatch(self, client, order, telegram):
        response = client.post(f"/api/orders/{order.id}/messages", json={"content": "x", "thread_key": 1})

        assert response.status_code == 409
        telegram.send_message.assert_not_awaited()

    def test_empty_content_rejected(self, client, order):
        assert client.post(f"/api/orders/{order.id}/messages", json={"content": ""}).status_code == 422


class TestReactions:
    def test_toggle_publishes_update(self, client, db, order, broadcaster):
        message = persist_message(db, thread_key=order.main_id, author_type="client", content="x", channel_message_id=1).message
        db.commit()

        response = client.post(
            f"/api/orders/{order.id}/messages/{message.id}/reactions",
            json={"emoji": "❤️", "author": "anna"},
        )

        assert response.status_code == 200
        assert response.json()["reactions"] == [{"emoji": "❤️", "author": "anna"}]
        assert broadcaster.publish.await_args.args[0] == MESSAGE_UPDATED

    def test_missing_message(self, client, order):
        response = client.post(f"/api/orders/{order.id}/messages/999/reactions", json={"emoji": "👍", "author": "a"})
        assert response.status_code == 404

    def test_message_of_another_order_is_rejected(self, client, db, order, broadcaster):
        other = resolve_conversation(db, 67890).value
        foreign = persist_message(db, thread_key=other.thread_key, author_type="client", content="x", channel_message_id=1).message
        db.commit()

        response = client.post(
            f"/api/orders/{order.id}/messages/{foreign.id}/reactions",
            json={"emoji": "👍", "author": "anna"},
        )

        assert response.status_code == 404
        broadcaster.publish.assert_not_awaited()
        db.refresh(foreign)
        assert foreign.reactions == []


class TestStatus:
    def test_change_publishes_thread_update(self, client, order, broadcaster):
        response = client.patch(f"/api/orders/{order.id}/status", json={"status": "completed"})

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        call = broadcaster.publish.await_args
        assert call.args[0] == THREAD_UPDATED
        assert call.kwargs == {"thread_key": order.main_id, "order_id": order.id, "contact_id": order.contact_id}

    def test_unknown_status(self, client, order):
        assert client.patch(f"/api/orders/{order.id}/status", json={"status": "lost"}).status_code == 400

    def test_unknown_order(self, client):
        assert client.patch("/api/orders/999/status", json={"status": "completed"}).status_code == 404


class TestMediaRoute:
    def test_serves_stored_file(self, client):
        url = app.state.media_storage.save(1700000000000001, "abc_voice.oga", b"OggS")

        response = client.get(url.replace("http://testserver", ""))

        assert response.status_code == 200
        assert response.content == b"OggS"

    def test_missing_file(self, client):
        assert client.get("/media/1/nothing.oga").status_code == 404


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_db_check(self, client):
        assert client.get("/db-check").json() == {"status": "ok", "database": "connected"}
