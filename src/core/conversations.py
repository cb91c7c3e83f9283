"""Conversation lifecycle tracking (core domain).

INITIATED -> IN_PROGRESS -> {COMPLETED, FAILED, CANCELLED}

Terminal states are final. The tracker is also the admission gate: a sender
with an active conversation cannot start another one.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from core.errors import ConversationConflictError, InvalidTransitionError
from core.models import (
    Conversation,
    ConversationStatus,
    DispatchResult,
    MatchType,
    SenderStats,
)
from core.ports import ConversationStore

LOGGER = logging.getLogger(__name__)


class ConversationTracker:
    def __init__(self, store: ConversationStore) -> None:
        self._store = store

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
        conversation_id = self._store.create(
            sender_id=sender_id,
            campaign_id=campaign_id,
            trigger_message=trigger_message,
            matched_keyword=matched_keyword,
            match_type=match_type,
            origin_line=origin_line,
            sender_name=sender_name,
        )
        LOGGER.info(
            "Conversation %s created: sender=%s campaign=%s line=%s",
            conversation_id,
            sender_id,
            campaign_id,
            origin_line,
        )
        return conversation_id

    def claim(
        self,
        sender_id: str,
        campaign_id: int,
        trigger_message: str,
        matched_keyword: str,
        match_type: MatchType,
        origin_line: Optional[str],
        sender_name: Optional[str] = None,
    ) -> Optional[int]:
        """Create a conversation unless the sender already holds one.

        The store enforces the one-active-conversation rule on insert, so two
        racing triggers cannot both win.
        """

        try:
            return self.create(
                sender_id,
                campaign_id,
                trigger_message,
                matched_keyword,
                match_type,
                origin_line,
                sender_name=sender_name,
            )
        except ConversationConflictError:
            LOGGER.info("Sender %s already has an active conversation; claim rejected", sender_id)
            return None

    def has_active(self, sender_id: str) -> Optional[Conversation]:
        return self._store.get_active(sender_id)

    def increment_sent(self, conversation_id: int) -> None:
        self._store.increment_sent(conversation_id)
        LOGGER.debug("Conversation %s message counter incremented", conversation_id)

    def complete(self, conversation_id: int) -> None:
        self._transition(conversation_id, ConversationStatus.COMPLETED)
        LOGGER.info("Conversation %s completed", conversation_id)

    def fail(self, conversation_id: int, reason: Optional[str] = None) -> None:
        self._transition(conversation_id, ConversationStatus.FAILED, reason)
        LOGGER.error("Conversation %s failed: %s", conversation_id, reason)

    def cancel(self, conversation_id: int, reason: Optional[str] = None) -> None:
        self._transition(conversation_id, ConversationStatus.CANCELLED, reason)
        LOGGER.warning("Conversation %s cancelled: %s", conversation_id, reason)

    def finalize(self, conversation_id: int, result: DispatchResult) -> ConversationStatus:
        """Close a conversation from its dispatch outcome.

        All sent or a mix of sent and failed -> COMPLETED; all failed -> FAILED.
        """

        if result.total and result.failed == result.total:
            self.fail(conversation_id, "All messages failed")
            return ConversationStatus.FAILED

        self.complete(conversation_id)
        if result.sent != result.total:
            LOGGER.warning(
                "Conversation %s completed with errors: %s/%s sent",
                conversation_id,
                result.sent,
                result.total,
            )
        return ConversationStatus.COMPLETED

    def update_origin_line(self, conversation_id: int, origin_line: str) -> None:
        self._store.set_origin_line(conversation_id, origin_line)
        LOGGER.info("Conversation %s now answered by line %s", conversation_id, origin_line)

    def sender_stats(self, sender_id: str) -> SenderStats:
        return self._store.sender_stats(sender_id)

    def active_for_line(self, origin_line: str) -> List[Conversation]:
        return self._store.list_active_for_line(origin_line)

    def _transition(
        self,
        conversation_id: int,
        status: ConversationStatus,
        reason: Optional[str] = None,
    ) -> None:
        current = self._store.get(conversation_id)
        if current is None:
            raise InvalidTransitionError(f"Conversation {conversation_id} does not exist")
        if current.status.is_terminal:
            raise InvalidTransitionError(
                f"Conversation {conversation_id} is already {current.status.value}; cannot move to {status.value}"
            )
        self._store.set_status(conversation_id, status, reason)
