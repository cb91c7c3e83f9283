from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from adapters.sqlite_storage import SQLiteStorage
from core.errors import ConversationConflictError, StoreError
from core.models import ConversationStatus, MatchType, MessageType

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def storage(tmp_path) -> SQLiteStorage:
    store = SQLiteStorage(str(tmp_path / "herald.db"))
    store.init_db()
    return store


def _seed(storage: SQLiteStorage, sql: str, params=()):
    conn = sqlite3.connect(storage._db_path)
    try:
        with conn:
            cur = conn.execute(sql, params)
        return cur.lastrowid
    finally:
        conn.close()


def _create(storage: SQLiteStorage, sender: str = "51999", campaign_id: int = 1, keyword: str = "yanachaga") -> int:
    return storage.create(
        sender_id=sender,
        campaign_id=campaign_id,
        trigger_message="info " + keyword,
        matched_keyword=keyword,
        match_type=MatchType.KEYWORD,
        origin_line="777",
        sender_name="Ana",
    )


def _trigger(storage: SQLiteStorage, now: datetime) -> None:
    storage.upsert_on_trigger(
        "51999",
        now=now,
        hour_cutoff=now - timedelta(hours=1),
        day_cutoff=now - timedelta(hours=24),
    )


def test_init_db_is_idempotent(storage: SQLiteStorage) -> None:
    storage.init_db()

    assert storage.list_active() == []


def test_trigger_counters_reset_per_window(storage: SQLiteStorage) -> None:
    _trigger(storage, NOW)
    _trigger(storage, NOW + timedelta(minutes=10))
    record = storage.get_record("51999")
    assert (record.hour_count, record.day_count, record.total_count) == (2, 2, 2)
    assert record.last_trigger_at == NOW + timedelta(minutes=10)

    _trigger(storage, NOW + timedelta(hours=2))
    record = storage.get_record("51999")
    assert (record.hour_count, record.day_count, record.total_count) == (1, 3, 3)

    _trigger(storage, NOW + timedelta(days=2))
    record = storage.get_record("51999")
    assert (record.hour_count, record.day_count, record.total_count) == (1, 1, 4)


def test_blocks(storage: SQLiteStorage) -> None:
    until = NOW + timedelta(hours=3)
    storage.set_block("51999", "spam", until)

    record = storage.get_record("51999")
    assert record.is_blocked
    assert record.blocked_until == until
    assert record.blocked_reason == "spam"

    storage.clear_block("51999")
    assert not storage.get_record("51999").is_blocked

    assert not storage.is_permanently_blocked("51999")
    storage.add_permanent_block("51999", "abuse")
    assert storage.is_permanently_blocked("51999")


def test_one_active_conversation_per_sender(storage: SQLiteStorage) -> None:
    first = _create(storage)

    with pytest.raises(ConversationConflictError):
        _create(storage)

    storage.set_status(first, ConversationStatus.COMPLETED)
    second = _create(storage)

    assert second != first
    assert storage.get_active("51999").id == second


def test_conversation_progress_and_terminal_state(storage: SQLiteStorage) -> None:
    conversation_id = _create(storage)

    storage.increment_sent(conversation_id)
    storage.increment_sent(conversation_id)
    conversation = storage.get(conversation_id)
    assert conversation.status is ConversationStatus.IN_PROGRESS
    assert conversation.messages_sent == 2
    assert conversation.match_type is MatchType.KEYWORD
    assert conversation.ended_at is None

    storage.set_status(conversation_id, ConversationStatus.FAILED, "All messages failed")
    conversation = storage.get(conversation_id)
    assert conversation.status is ConversationStatus.FAILED
    assert conversation.failure_reason == "All messages failed"
    assert conversation.ended_at is not None
    assert storage.get_active("51999") is None


def test_origin_line_and_stats(storage: SQLiteStorage) -> None:
    first = _create(storage)
    _create(storage, sender="51888", keyword="lodge")
    storage.set_origin_line(first, "888")

    assert [c.sender_id for c in storage.list_active_for_line("777")] == ["51888"]

    storage.set_status(first, ConversationStatus.COMPLETED)
    stats = storage.campaign_stats(1)
    assert (stats.total_conversations, stats.completed, stats.in_progress, stats.unique_keywords) == (2, 1, 0, 2)

    sender = storage.sender_stats("51999")
    assert (sender.total_conversations, sender.completed, sender.failed) == (1, 1, 0)
    assert sender.last_conversation_at is not None


def test_campaigns_by_priority(storage: SQLiteStorage) -> None:
    rules = json.dumps({"keywords": ["info"]})
    _seed(storage, "INSERT INTO campaigns (name, trigger_keywords, priority) VALUES ('low', ?, 1)", (rules,))
    high = _seed(storage, "INSERT INTO campaigns (name, trigger_keywords, priority) VALUES ('high', ?, 9)", (rules,))
    _seed(
        storage,
        "INSERT INTO campaigns (name, trigger_keywords, priority, is_active) VALUES ('off', ?, 99, 0)",
        (rules,),
    )

    campaigns = storage.list_active()

    assert [c.name for c in campaigns] == ["high", "low"]
    assert campaigns[0].trigger_keywords == rules
    assert storage.get_campaign(high).priority == 9
    assert storage.get_campaign(404) is None


def test_plan_and_media_ordering(storage: SQLiteStorage) -> None:
    insert = "INSERT INTO messages (campaign_id, type_code, content, sort_order, delay_seconds) VALUES (1, ?, ?, ?, ?)"
    gallery = _seed(storage, insert, ("gallery", None, 2, 5))
    _seed(storage, insert, ("TEXT", "Hola {nombre}", 1, 0))
    _seed(storage, insert, ("VIDEO", "unsupported", 3, 0))
    _seed(storage, insert, ("TEXT", "removed", 4, 0))
    _seed(storage, "UPDATE messages SET deleted_at = '2024-01-01' WHERE content = 'removed'")
    media = "INSERT INTO message_media (message_id, media_type, file_path, sort_order) VALUES (?, 'image', ?, ?)"
    _seed(storage, media, (gallery, "/b.jpg", 2))
    _seed(storage, media, (gallery, "/a.jpg", 1))

    plan = storage.get_plan_for_campaign(1)

    assert [(item.type, item.sort_order) for item in plan] == [(MessageType.TEXT, 1), (MessageType.GALLERY, 2)]
    assert plan[1].delay_seconds == 5
    assert [ref.locator for ref in storage.get_media_for_item(gallery)] == ["/a.jpg", "/b.jpg"]


def test_delivery_log(storage: SQLiteStorage) -> None:
    conversation_id = _create(storage)
    storage.log_sent(conversation_id, 1, "42")
    storage.log_failed(conversation_id, 2, "timeout")

    conn = sqlite3.connect(storage._db_path)
    try:
        rows = conn.execute(
            "SELECT message_id, delivery_status, transport_message_id, error_message FROM message_log ORDER BY id"
        ).fetchall()
    finally:
        conn.close()

    assert rows == [(1, "SENT", "42", None), (2, "FAILED", None, "timeout")]


def test_unreadable_database_raises_store_error(tmp_path) -> None:
    storage = SQLiteStorage(str(tmp_path / "missing" / "herald.db"))

    with pytest.raises(StoreError):
        storage.init_db()
