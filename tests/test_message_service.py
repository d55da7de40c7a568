from datetime import datetime, timedelta, timezone

import pytest

from crmsync.models import Message, Order, OrderMessage
from crmsync.services.conversation_service import resolve_conversation
from crmsync.services.message_service import (
    add_reaction,
    list_thread_messages,
    persist_message,
    serialize_message,
)


@pytest.fixture
def thread(db):
    resolved = resolve_conversation(db, 12345).value
    db.commit()
    return db.query(Order).filter(Order.id == resolved.order_id).one()


class TestPersistMessage:
    def test_redelivered_channel_message_is_stored_once(self, db, thread):
        results = []
        for _ in range(3):
            results.append(
                persist_message(
                    db,
                    thread_key=thread.main_id,
                    author_type="client",
                    content="Привет",
                    channel_message_id=42,
                )
            )
            db.commit()

        assert [r.created for r in results] == [True, False, False]
        assert len({r.message.id for r in results}) == 1
        assert db.query(Message).count() == 1

    def test_messages_without_channel_id_always_insert(self, db, thread):
        persist_message(db, thread_key=thread.main_id, author_type="operator", content="Добрый день")
        persist_message(db, thread_key=thread.main_id, author_type="operator", content="Добрый день")
        db.commit()

        assert db.query(Message).count() == 2

    def test_same_channel_id_in_other_thread_is_distinct(self, db, thread):
        other = resolve_conversation(db, 67890).value
        persist_message(db, thread_key=thread.main_id, author_type="client", content="a", channel_message_id=7)
        persist_message(db, thread_key=other.thread_key, author_type="client", content="b", channel_message_id=7)
        db.commit()

        assert db.query(Message).count() == 2

    def test_order_link_written_once(self, db, thread):
        for _ in range(2):
            persist_message(db, thread_key=thread.main_id, author_type="client", content="x", channel_message_id=5)
        db.commit()

        link = db.query(OrderMessage).one()
        assert link.order_id == thread.id

    def test_stores_optional_fields(self, db, thread):
        result = persist_message(
            db,
            thread_key=thread.main_id,
            author_type="client",
            author_name="Иван",
            content="[Голосовое сообщение: файл не удалось загрузить]",
            channel_message_id=8,
            message_type="voice",
            attachment_url=None,
            reply_to_channel_message_id=3,
            client_ref=None,
        )
        db.commit()

        message = result.message
        assert message.message_type == "voice"
        assert message.attachment_url is None
        assert message.reply_to_mess_id_tg == 3
        assert message.reactions == []

    def test_rejects_unknown_author_type(self, db, thread):
        with pytest.raises(ValueError):
            persist_message(db, thread_key=thread.main_id, author_type="robot", content="x")


class TestListThreadMessages:
    def test_merges_linked_messages_sorted_and_paginated(self, db, thread):
        base = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
        own = [
            Message(main_id=thread.main_id, author_type="client", content=f"m{i}", created_at=base + timedelta(minutes=i))
            for i in (0, 2, 4)
        ]
        db.add_all(own)
        # stored under a legacy thread key, tied to the order only through the join table
        legacy = Message(main_id=1, author_type="operator", content="legacy", created_at=base + timedelta(minutes=1))
        db.add(legacy)
        db.flush()
        db.add(OrderMessage(order_id=thread.id, message_id=legacy.id))
        db.add(OrderMessage(order_id=thread.id, message_id=own[0].id))
        db.commit()

        messages, total = list_thread_messages(db, thread)

        assert total == 4
        assert [m.content for m in messages] == ["m0", "legacy", "m2", "m4"]

        page, total = list_thread_messages(db, thread, limit=2, offset=1)
        assert total == 4
        assert [m.content for m in page] == ["legacy", "m2"]


class TestAddReaction:
    def test_toggles(self, db, thread):
        message = persist_message(db, thread_key=thread.main_id, author_type="client", content="x").message
        db.commit()

        added = add_reaction(db, message.id, "👍", "operator-1")
        assert added.ok is True
        assert added.value.reactions == [{"emoji": "👍", "author": "operator-1"}]

        removed = add_reaction(db, message.id, "👍", "operator-1")
        assert removed.value.reactions == []

    def test_missing_message(self, db):
        result = add_reaction(db, 999, "👍", "operator-1")
        assert result.ok is False
        assert result.error_code == "not_found"

    def test_message_of_another_thread_is_not_found(self, db, thread):
        other = resolve_conversation(db, 777).value
        foreign = persist_message(db, thread_key=other.thread_key, author_type="client", content="x").message
        db.commit()

        result = add_reaction(db, foreign.id, "👍", "operator-1", order=thread)

        assert result.ok is False
        assert result.error_code == "not_found"
        db.refresh(foreign)
        assert foreign.reactions == []

    def test_message_linked_to_order_is_accepted(self, db, thread):
        legacy = Message(main_id=1000000000000099, author_type="client", content="legacy")
        db.add(legacy)
        db.flush()
        db.add(OrderMessage(order_id=thread.id, message_id=legacy.id))
        db.commit()

        result = add_reaction(db, legacy.id, "👍", "operator-1", order=thread)

        assert result.ok is True


class TestSerializeMessage:
    def test_timestamps_are_utc(self, db, thread):
        message = persist_message(db, thread_key=thread.main_id, author_type="client", content="x", channel_message_id=1).message
        db.commit()
        db.expire_all()

        data = serialize_message(db.query(Message).one())

        assert data["main_id"] == thread.main_id
        assert data["created_at"].endswith("Z") or data["created_at"].endswith("+00:00")
        assert data["reactions"] == []
