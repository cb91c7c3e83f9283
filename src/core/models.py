"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Tuple


class MatchType(str, Enum):
    EXACT = "EXACT"
    KEYWORD = "KEYWORD"
    SYNONYM = "SYNONYM"


class ConversationStatus(str, Enum):
    INITIATED = "INITIATED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


ACTIVE_STATUSES = frozenset({ConversationStatus.INITIATED, ConversationStatus.IN_PROGRESS})


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"
    DOCUMENT = "DOCUMENT"
    GALLERY = "GALLERY"


class RateLimitReason(str, Enum):
    BLOCKED_PERMANENT = "BLOCKED_PERMANENT"
    BLOCKED_TEMPORARY = "BLOCKED_TEMPORARY"
    UNBLOCKED = "UNBLOCKED"
    NEW_USER = "NEW_USER"
    RATE_LIMIT_HOUR = "RATE_LIMIT_HOUR"
    RATE_LIMIT_DAY = "RATE_LIMIT_DAY"
    OK = "OK"
    ERROR_CHECK = "ERROR_CHECK"


@dataclass(frozen=True)
class InboundMessage:
    """Minimal inbound message context produced by a transport adapter."""

    sender_id: str
    text: str
    is_group: bool = False
    is_self: bool = False
    sender_display_name: Optional[str] = None


@dataclass(frozen=True)
class KeywordRuleSet:
    """Validated per-campaign trigger rules.

    Synonyms keep their insertion order as ``(main_word, synonyms)`` pairs.
    """

    exact_matches: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    synonyms: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    excluded_words: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MatchResult:
    """Which rule fired, reported by its configured (not normalized) text."""

    matched: str
    match_type: MatchType


@dataclass(frozen=True)
class Campaign:
    """Campaign row as returned by the store.

    ``trigger_keywords`` is the raw rule-set document; it is validated per
    evaluation so one malformed campaign cannot break selection.
    """

    id: int
    name: str
    priority: int
    trigger_keywords: Any
    active: bool = True


@dataclass(frozen=True)
class CampaignMatch:
    campaign_id: int
    campaign_name: str
    matched_keyword: str
    match_type: MatchType
    priority: int


@dataclass(frozen=True)
class CampaignStats:
    campaign_id: int
    total_conversations: int = 0
    completed: int = 0
    failed: int = 0
    in_progress: int = 0
    unique_keywords: int = 0


@dataclass(frozen=True)
class RateLimitRecord:
    sender_id: str
    is_blocked: bool = False
    blocked_until: Optional[datetime] = None
    blocked_reason: Optional[str] = None
    hour_count: int = 0
    day_count: int = 0
    total_count: int = 0
    last_trigger_at: Optional[datetime] = None
    blocked_permanently: bool = False


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: RateLimitReason


@dataclass(frozen=True)
class Conversation:
    """One delivery attempt for a (sender, trigger) pair."""

    id: int
    sender_id: str
    campaign_id: int
    status: ConversationStatus
    messages_sent: int = 0
    origin_line: Optional[str] = None
    sender_name: Optional[str] = None
    trigger_message: Optional[str] = None
    matched_keyword: Optional[str] = None
    match_type: Optional[MatchType] = None
    failure_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


@dataclass(frozen=True)
class SenderStats:
    sender_id: str
    total_conversations: int = 0
    completed: int = 0
    failed: int = 0
    last_conversation_at: Optional[datetime] = None


@dataclass(frozen=True)
class MediaRef:
    media_type: str
    locator: str
    mime_type: Optional[str] = None
    sort_order: int = 0
    file_name: Optional[str] = None


@dataclass(frozen=True)
class MessagePlanItem:
    id: int
    type: MessageType
    content_template: Optional[str] = None
    sort_order: int = 0
    delay_seconds: int = 0
    media_refs: Tuple[MediaRef, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MediaAttachment:
    """Downloaded media bytes ready to hand to a transport."""

    data: bytes
    mime_type: str
    file_name: str = "file"


@dataclass(frozen=True)
class SendOptions:
    caption: Optional[str] = None
    voice_note: bool = False
    as_document: bool = False


@dataclass(frozen=True)
class DispatchResult:
    total: int
    sent: int
    failed: int
