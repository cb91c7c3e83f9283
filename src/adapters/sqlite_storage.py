"""SQLite storage adapter.

Implements the core campaign, rate-limit, conversation, plan and delivery-log
ports using a single SQLite database.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from core.errors import ConversationConflictError, StoreError
from core.models import (
    Campaign,
    CampaignStats,
    Conversation,
    ConversationStatus,
    MatchType,
    MediaRef,
    MessagePlanItem,
    MessageType,
    RateLimitRecord,
    SenderStats,
)

LOGGER = logging.getLogger(__name__)

_ACTIVE = "('INITIATED', 'IN_PROGRESS')"
_TERMINAL = ("COMPLETED", "FAILED", "CANCELLED")


def _ts(value: datetime) -> str:
    """Serialize a timestamp so that string order equals time order."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _now() -> str:
    return _ts(datetime.now(timezone.utc))


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the core storage ports."""

    def __init__(self, db_path: str, timeout: float = 10.0) -> None:
        self._db_path = db_path
        self._timeout = timeout

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path, timeout=self._timeout)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open database {self._db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - campaigns / messages / message_media: campaign plans (read-only here)
        - user_rate_limit / blocked_numbers: admission control state
        - conversations: one row per trigger, never deleted
        - message_log: append-only delivery audit
        """

        with self._connect() as conn:
            # trigger_keywords holds the JSON rule-set document; it is validated
            # when campaigns are evaluated, not on write.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS campaigns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    description TEXT,
                    trigger_keywords TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    priority INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP,
                    deleted_at TIMESTAMP
                )
                """
            )
            # messages are the ordered plan steps of a campaign.
            # - type_code: TEXT, IMAGE, AUDIO, DOCUMENT or GALLERY
            # - content: text body or caption template with {variables}
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    campaign_id INTEGER NOT NULL,
                    type_code TEXT NOT NULL,
                    content TEXT,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    delay_seconds INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    deleted_at TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS message_media (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id INTEGER NOT NULL,
                    media_type TEXT,
                    file_path TEXT NOT NULL,
                    file_name TEXT,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    mime_type TEXT,
                    deleted_at TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_rate_limit (
                    user_phone TEXT PRIMARY KEY,
                    is_blocked INTEGER NOT NULL DEFAULT 0,
                    blocked_reason TEXT,
                    blocked_at TIMESTAMP,
                    blocked_until TIMESTAMP,
                    trigger_count_hour INTEGER NOT NULL DEFAULT 0,
                    trigger_count_day INTEGER NOT NULL DEFAULT 0,
                    trigger_count_total INTEGER NOT NULL DEFAULT 0,
                    last_trigger_at TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS blocked_numbers (
                    phone_number TEXT PRIMARY KEY,
                    reason TEXT,
                    blocked_at TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sender_id TEXT NOT NULL,
                    sender_name TEXT,
                    campaign_id INTEGER NOT NULL,
                    trigger_message TEXT,
                    matched_keyword TEXT,
                    match_type TEXT,
                    origin_line TEXT,
                    status TEXT NOT NULL,
                    messages_sent INTEGER NOT NULL DEFAULT 0,
                    failure_reason TEXT,
                    started_at TIMESTAMP NOT NULL,
                    ended_at TIMESTAMP,
                    last_message_sent_at TIMESTAMP,
                    updated_at TIMESTAMP
                )
                """
            )
            # At most one active conversation per sender. Inserting a second
            # one fails, which is what makes the admission claim atomic.
            conn.execute(
                f"""
                CREATE UNIQUE INDEX IF NOT EXISTS ux_conversations_active_sender
                ON conversations (sender_id)
                WHERE status IN {_ACTIVE}
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS message_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id INTEGER NOT NULL,
                    message_id INTEGER NOT NULL,
                    sent_at TIMESTAMP NOT NULL,
                    delivery_status TEXT NOT NULL,
                    transport_message_id TEXT,
                    error_message TEXT
                )
                """
            )

    # Campaigns

    def list_active(self) -> List[Campaign]:
        """Return active campaigns, highest priority first."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, name, trigger_keywords, priority, is_active
                FROM campaigns
                WHERE is_active = 1 AND deleted_at IS NULL
                ORDER BY priority DESC, id ASC
                """
            ).fetchall()
        return [self._campaign_from_row(row) for row in rows]

    def get_campaign(self, campaign_id: int) -> Optional[Campaign]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, name, trigger_keywords, priority, is_active
                FROM campaigns
                WHERE id = ? AND deleted_at IS NULL
                """,
                (campaign_id,),
            ).fetchone()
        return self._campaign_from_row(row) if row else None

    def campaign_stats(self, campaign_id: int) -> CampaignStats:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_conversations,
                    SUM(CASE WHEN status = 'COMPLETED' THEN 1 ELSE 0 END) AS completed,
                    SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) AS failed,
                    SUM(CASE WHEN status = 'IN_PROGRESS' THEN 1 ELSE 0 END) AS in_progress,
                    COUNT(DISTINCT matched_keyword) AS unique_keywords
                FROM conversations
                WHERE campaign_id = ?
                """,
                (campaign_id,),
            ).fetchone()
        return CampaignStats(
            campaign_id=campaign_id,
            total_conversations=row["total_conversations"] or 0,
            completed=row["completed"] or 0,
            failed=row["failed"] or 0,
            in_progress=row["in_progress"] or 0,
            unique_keywords=row["unique_keywords"] or 0,
        )

    @staticmethod
    def _campaign_from_row(row: sqlite3.Row) -> Campaign:
        return Campaign(
            id=row["id"],
            name=row["name"],
            priority=row["priority"],
            trigger_keywords=row["trigger_keywords"],
            active=bool(row["is_active"]),
        )

    # Rate limits

    def get_record(self, sender_id: str) -> Optional[RateLimitRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_rate_limit WHERE user_phone = ?",
                (sender_id,),
            ).fetchone()
        if row is None:
            return None
        return RateLimitRecord(
            sender_id=sender_id,
            is_blocked=bool(row["is_blocked"]),
            blocked_until=_parse_ts(row["blocked_until"]),
            blocked_reason=row["blocked_reason"],
            hour_count=row["trigger_count_hour"],
            day_count=row["trigger_count_day"],
            total_count=row["trigger_count_total"],
            last_trigger_at=_parse_ts(row["last_trigger_at"]),
        )

    def upsert_on_trigger(
        self,
        sender_id: str,
        now: datetime,
        hour_cutoff: datetime,
        day_cutoff: datetime,
    ) -> None:
        """Insert or update counters in one statement so concurrent triggers
        never lose an increment."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_rate_limit (
                    user_phone,
                    last_trigger_at,
                    trigger_count_hour,
                    trigger_count_day,
                    trigger_count_total,
                    is_blocked
                ) VALUES (:sender, :now, 1, 1, 1, 0)
                ON CONFLICT(user_phone) DO UPDATE SET
                    trigger_count_hour = CASE
                        WHEN last_trigger_at IS NULL OR last_trigger_at < :hour_cutoff THEN 1
                        ELSE trigger_count_hour + 1
                    END,
                    trigger_count_day = CASE
                        WHEN last_trigger_at IS NULL OR last_trigger_at < :day_cutoff THEN 1
                        ELSE trigger_count_day + 1
                    END,
                    trigger_count_total = trigger_count_total + 1,
                    last_trigger_at = :now
                """,
                {
                    "sender": sender_id,
                    "now": _ts(now),
                    "hour_cutoff": _ts(hour_cutoff),
                    "day_cutoff": _ts(day_cutoff),
                },
            )

    def set_block(self, sender_id: str, reason: Optional[str], until: Optional[datetime]) -> None:
        until_value = _ts(until) if until is not None else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_rate_limit (user_phone, is_blocked, blocked_reason, blocked_at, blocked_until)
                VALUES (?, 1, ?, ?, ?)
                ON CONFLICT(user_phone) DO UPDATE SET
                    is_blocked = 1,
                    blocked_reason = excluded.blocked_reason,
                    blocked_at = excluded.blocked_at,
                    blocked_until = excluded.blocked_until
                """,
                (sender_id, reason, _now(), until_value),
            )

    def clear_block(self, sender_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_rate_limit SET is_blocked = 0, blocked_until = NULL WHERE user_phone = ?",
                (sender_id,),
            )

    def is_permanently_blocked(self, sender_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM blocked_numbers WHERE phone_number = ?",
                (sender_id,),
            ).fetchone()
        return row is not None

    def add_permanent_block(self, sender_id: str, reason: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO blocked_numbers (phone_number, reason, blocked_at) VALUES (?, ?, ?)",
                (sender_id, reason, _now()),
            )

    # Conversations

    def create(
        self,
        sender_id: str,
        campaign_id: int,
        trigger_message: str,
        matched_keyword: str,
        match_type: MatchType,
        origin_line: Optional[str],
        sender_name: Optional[str] = None,
    ) -> int:
        now = _now()
        with self._connect() as conn:
            try:
                cur = conn.execute(
                    """
                    INSERT INTO conversations (
                        sender_id,
                        sender_name,
                        campaign_id,
                        trigger_message,
                        matched_keyword,
                        match_type,
                        origin_line,
                        status,
                        started_at,
                        updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 'INITIATED', ?, ?)
                    """,
                    (
                        sender_id,
                        sender_name,
                        campaign_id,
                        trigger_message,
                        matched_keyword,
                        MatchType(match_type).value,
                        origin_line,
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConversationConflictError(
                    f"Sender {sender_id} already has an active conversation"
                ) from exc
            return int(cur.lastrowid)

    def get(self, conversation_id: int) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return self._conversation_from_row(row) if row else None

    def get_active(self, sender_id: str) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM conversations
                WHERE sender_id = ? AND status IN {_ACTIVE}
                ORDER BY started_at DESC, id DESC
                LIMIT 1
                """,
                (sender_id,),
            ).fetchone()
        return self._conversation_from_row(row) if row else None

    def increment_sent(self, conversation_id: int) -> None:
        now = _now()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE conversations
                SET messages_sent = messages_sent + 1,
                    last_message_sent_at = ?,
                    status = CASE WHEN status = 'INITIATED' THEN 'IN_PROGRESS' ELSE status END,
                    updated_at = ?
                WHERE id = ?
                """,
                (now, now, conversation_id),
            )

    def set_status(
        self,
        conversation_id: int,
        status: ConversationStatus,
        reason: Optional[str] = None,
    ) -> None:
        status = ConversationStatus(status)
        now = _now()
        ended_at = now if status.value in _TERMINAL else None
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE conversations
                SET status = ?,
                    failure_reason = COALESCE(?, failure_reason),
                    ended_at = COALESCE(?, ended_at),
                    updated_at = ?
                WHERE id = ?
                """,
                (status.value, reason, ended_at, now, conversation_id),
            )

    def set_origin_line(self, conversation_id: int, origin_line: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE conversations SET origin_line = ?, updated_at = ? WHERE id = ?",
                (origin_line, _now(), conversation_id),
            )

    def sender_stats(self, sender_id: str) -> SenderStats:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_conversations,
                    SUM(CASE WHEN status = 'COMPLETED' THEN 1 ELSE 0 END) AS completed,
                    SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) AS failed,
                    MAX(started_at) AS last_conversation
                FROM conversations
                WHERE sender_id = ?
                """,
                (sender_id,),
            ).fetchone()
        return SenderStats(
            sender_id=sender_id,
            total_conversations=row["total_conversations"] or 0,
            completed=row["completed"] or 0,
            failed=row["failed"] or 0,
            last_conversation_at=_parse_ts(row["last_conversation"]),
        )

    def list_active_for_line(self, origin_line: str) -> List[Conversation]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM conversations
                WHERE origin_line = ? AND status IN {_ACTIVE}
                ORDER BY started_at DESC, id DESC
                """,
                (origin_line,),
            ).fetchall()
        return [self._conversation_from_row(row) for row in rows]

    @staticmethod
    def _conversation_from_row(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            sender_id=row["sender_id"],
            sender_name=row["sender_name"],
            campaign_id=row["campaign_id"],
            origin_line=row["origin_line"],
            status=ConversationStatus(row["status"]),
            messages_sent=row["messages_sent"],
            trigger_message=row["trigger_message"],
            matched_keyword=row["matched_keyword"],
            match_type=MatchType(row["match_type"]) if row["match_type"] else None,
            failure_reason=row["failure_reason"],
            started_at=_parse_ts(row["started_at"]),
            ended_at=_parse_ts(row["ended_at"]),
        )

    # Message plans

    def get_plan_for_campaign(self, campaign_id: int) -> List[MessagePlanItem]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, type_code, content, sort_order, delay_seconds
                FROM messages
                WHERE campaign_id = ? AND is_active = 1 AND deleted_at IS NULL
                ORDER BY sort_order ASC, id ASC
                """,
                (campaign_id,),
            ).fetchall()

        items: List[MessagePlanItem] = []
        for row in rows:
            try:
                message_type = MessageType(str(row["type_code"]).upper())
            except ValueError:
                LOGGER.warning("Skipping message %s with unsupported type %r", row["id"], row["type_code"])
                continue
            items.append(
                MessagePlanItem(
                    id=row["id"],
                    type=message_type,
                    content_template=row["content"],
                    sort_order=row["sort_order"],
                    delay_seconds=row["delay_seconds"] or 0,
                )
            )
        return items

    def get_media_for_item(self, item_id: int) -> List[MediaRef]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT media_type, file_path, file_name, sort_order, mime_type
                FROM message_media
                WHERE message_id = ? AND deleted_at IS NULL
                ORDER BY sort_order ASC, id ASC
                """,
                (item_id,),
            ).fetchall()
        return [
            MediaRef(
                media_type=row["media_type"] or "",
                locator=row["file_path"],
                mime_type=row["mime_type"],
                sort_order=row["sort_order"],
                file_name=row["file_name"],
            )
            for row in rows
        ]

    # Delivery log

    def log_sent(self, conversation_id: int, item_id: int, transport_message_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO message_log (conversation_id, message_id, sent_at, delivery_status, transport_message_id)
                VALUES (?, ?, ?, 'SENT', ?)
                """,
                (conversation_id, item_id, _now(), transport_message_id),
            )

    def log_failed(self, conversation_id: int, item_id: int, error_text: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO message_log (conversation_id, message_id, sent_at, delivery_status, error_message)
                VALUES (?, ?, ?, 'FAILED', ?)
                """,
                (conversation_id, item_id, _now(), error_text),
            )
