"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage, transport, and media
adapters so that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Union

from core.models import (
    Campaign,
    CampaignStats,
    Conversation,
    ConversationStatus,
    MatchType,
    MediaAttachment,
    MediaRef,
    MessagePlanItem,
    RateLimitRecord,
    SendOptions,
    SenderStats,
)


class CampaignStore(Protocol):
    """Read-only campaign access."""

    def list_active(self) -> List[Campaign]:
        """Return active campaigns ordered by priority, highest first."""
        ...

    def get_campaign(self, campaign_id: int) -> Optional[Campaign]:
        ...

    def campaign_stats(self, campaign_id: int) -> CampaignStats:
        ...


class RateLimitStore(Protocol):
    def get_record(self, sender_id: str) -> Optional[RateLimitRecord]:
        ...

    def upsert_on_trigger(
        self,
        sender_id: str,
        now: datetime,
        hour_cutoff: datetime,
        day_cutoff: datetime,
    ) -> None:
        """Insert or bump counters; a window counter resets when the last
        trigger is older than its cutoff."""
        ...

    def set_block(self, sender_id: str, reason: Optional[str], until: Optional[datetime]) -> None:
        ...

    def clear_block(self, sender_id: str) -> None:
        ...

    def is_permanently_blocked(self, sender_id: str) -> bool:
        ...

    def add_permanent_block(self, sender_id: str, reason: Optional[str]) -> None:
        ...


class ConversationStore(Protocol):
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
        """Insert an INITIATED conversation.

        Raises ConversationConflictError if the sender already has an active
        conversation.
        """
        ...

    def get(self, conversation_id: int) -> Optional[Conversation]:
        ...

    def get_active(self, sender_id: str) -> Optional[Conversation]:
        ...

    def increment_sent(self, conversation_id: int) -> None:
        ...

    def set_status(
        self,
        conversation_id: int,
        status: ConversationStatus,
        reason: Optional[str] = None,
    ) -> None:
        ...

    def set_origin_line(self, conversation_id: int, origin_line: str) -> None:
        ...

    def sender_stats(self, sender_id: str) -> SenderStats:
        ...

    def list_active_for_line(self, origin_line: str) -> List[Conversation]:
        ...


class PlanStore(Protocol):
    def get_plan_for_campaign(self, campaign_id: int) -> List[MessagePlanItem]:
        ...

    def get_media_for_item(self, item_id: int) -> List[MediaRef]:
        ...


class DeliveryLog(Protocol):
    """Write-only delivery audit trail."""

    def log_sent(self, conversation_id: int, item_id: int, transport_message_id: str) -> None:
        ...

    def log_failed(self, conversation_id: int, item_id: int, error_text: str) -> None:
        ...


class TransportPort(Protocol):
    """Outbound side of the chat transport."""

    async def send(
        self,
        recipient: str,
        payload: Union[str, MediaAttachment],
        options: Optional[SendOptions] = None,
    ) -> str:
        """Send text or media and return the transport message id.

        Raises TransportError for a failed send and TransportFatalError when
        the session itself is gone.
        """
        ...


class MediaFetcher(Protocol):
    async def fetch(self, url: str) -> bytes:
        """Download ``url`` or raise MediaFetchError."""
        ...
