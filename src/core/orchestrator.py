"""Core inbound-message pipeline.

The orchestrator enforces a strict order per inbound message:
1) Fast-exit for group, self-originated, or empty messages
2) Campaign selection
3) Rate-limit admission
4) Active-conversation gate and atomic claim
5) Plan loading and paced dispatch
6) Conversation finalization and rate-limit bookkeeping

It is the only component that decides a conversation's terminal status.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

from core.campaigns import CampaignSelector
from core.config import QueueConfig
from core.conversations import ConversationTracker
from core.dispatcher import MessageDispatcher
from core.errors import DispatchCancelledError, InvalidTransitionError, StoreError, TransportFatalError
from core.models import InboundMessage, MessagePlanItem
from core.ports import PlanStore
from core.rate_limiter import RateLimiter

LOGGER = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = "Usuario"


def load_plan(plans: PlanStore, campaign_id: int) -> List[MessagePlanItem]:
    """Fetch a campaign's plan with each item's media attached."""

    items = plans.get_plan_for_campaign(campaign_id)
    loaded: List[MessagePlanItem] = []
    for item in items:
        if item.media_refs:
            loaded.append(item)
            continue
        media = tuple(plans.get_media_for_item(item.id))
        loaded.append(
            MessagePlanItem(
                id=item.id,
                type=item.type,
                content_template=item.content_template,
                sort_order=item.sort_order,
                delay_seconds=item.delay_seconds,
                media_refs=media,
            )
        )
    LOGGER.info("Loaded %s plan items for campaign %s", len(loaded), campaign_id)
    return loaded

class Orchestrator:
    """Runs one trigger evaluation and delivery per inbound message."""

    def __init__(
        self,
        selector: CampaignSelector,
        rate_limiter: RateLimiter,
        tracker: ConversationTracker,
        plans: PlanStore,
        dispatcher: MessageDispatcher,
        origin_line: Callable[[], Optional[str]] = lambda: None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        self._selector = selector
        self._rate_limiter = rate_limiter
        self._tracker = tracker
        self._plans = plans
        self._dispatcher = dispatcher
        self._origin_line = origin_line
        self._stop_event = stop_event
        # Locks exist only while a sender has messages in flight.
        self._sender_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @property
    def tracked_senders(self) -> int:
        return len(self._sender_locks)

    @asynccontextmanager
    async def _sender_slot(self, sender_id: str) -> AsyncIterator[None]:
        lock = self._sender_locks.get(sender_id)
        if lock is None:
            lock = self._sender_locks[sender_id] = asyncio.Lock()
        self._lock_users[sender_id] = self._lock_users.get(sender_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[sender_id] - 1
            if remaining:
                self._lock_users[sender_id] = remaining
            else:
                del self._lock_users[sender_id]
                del self._sender_locks[sender_id]

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def handle(self, message: InboundMessage) -> Optional[int]:
        """Process one inbound message; return the conversation id if one ran."""

        if message.is_self or message.is_group:
            return None
        # Media-only messages without text cannot trigger anything.
        if not message.text or not message.text.strip():
            return None
        if self._stopping():
            LOGGER.info("Shutting down; ignoring message from %s", message.sender_id)
            return None

        async with self._sender_slot(message.sender_id):
            return await self._handle_locked(message)

    async def _handle_locked(self, message: InboundMessage) -> Optional[int]:
        sender = message.sender_id
        # Shutdown may have started while this message waited for the lock.
        if self._stopping():
            LOGGER.info("Shutting down; ignoring queued message from %s", sender)
            return None

        LOGGER.info("Message from %s (%s): %r", sender, message.sender_display_name, message.text)

        match = self._selector.detect_campaign(message.text)
        if match is None:
            return None

        decision = self._rate_limiter.check(sender)
        if not decision.allowed:
            LOGGER.warning("Sender %s not admitted: %s", sender, decision.reason.value)
            return None

        active = self._tracker.has_active(sender)
        if active is not None:
            LOGGER.info("Sender %s already has conversation %s in progress; ignoring", sender, active.id)
            return None

        display_name = message.sender_display_name or DEFAULT_DISPLAY_NAME
        conversation_id = self._tracker.claim(
            sender_id=sender,
            campaign_id=match.campaign_id,
            trigger_message=message.text,
            matched_keyword=match.matched_keyword,
            match_type=match.match_type,
            origin_line=self._origin_line(),
            sender_name=display_name,
        )
        if conversation_id is None:
            return None

        try:
            await self._deliver(conversation_id, match.campaign_id, sender, display_name)
        except TransportFatalError:
            raise
        except Exception as exc:
            # A claimed conversation never stays active after an error.
            self._fail_safely(conversation_id, str(exc) or type(exc).__name__)
            raise
        finally:
            self._record_trigger(sender)
        return conversation_id

    async def _deliver(self, conversation_id: int, campaign_id: int, sender: str, display_name: str) -> None:
        plan = load_plan(self._plans, campaign_id)
        if not plan:
            LOGGER.warning("Campaign %s has no messages configured", campaign_id)
            self._tracker.fail(conversation_id, "No messages configured")
            return

        variables = {
            "name": display_name,
            "nombre": display_name,
            "phone": sender,
            "telefono": sender,
        }
        try:
            result = await self._dispatcher.dispatch(
                plan,
                sender,
                variables,
                conversation_id,
                stop_event=self._stop_event,
            )
        except DispatchCancelledError as exc:
            self._tracker.cancel(conversation_id, str(exc))
            return
        except TransportFatalError as exc:
            self._fail_safely(conversation_id, f"Transport lost: {exc}")
            raise

        self._tracker.finalize(conversation_id, result)

    def _fail_safely(self, conversation_id: int, reason: str) -> None:
        try:
            self._tracker.fail(conversation_id, reason)
        except (StoreError, InvalidTransitionError):
            LOGGER.exception("Could not mark conversation %s as failed", conversation_id)

    def _record_trigger(self, sender_id: str) -> None:
        try:
            self._rate_limiter.update(sender_id)
        except StoreError:
            LOGGER.exception("Could not update rate limit counters for %s", sender_id)


class InboundQueue:
    """Bounded queue feeding the orchestrator from transport callbacks.

    Workers pull messages in arrival order and immediately queue on the
    sender's lock, so one sender's messages are handled in order while
    different senders proceed concurrently.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        config: QueueConfig,
        on_transport_lost: Optional[Callable[[TransportFatalError], None]] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._config = config
        self._on_transport_lost = on_transport_lost
        self._queue: "asyncio.Queue[InboundMessage]" = asyncio.Queue(maxsize=config.max_size)
        self._workers: List[asyncio.Task] = []

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        for index in range(self._config.workers):
            self._workers.append(asyncio.ensure_future(self._worker(index)))
        LOGGER.info("Inbound queue started with %s workers", len(self._workers))

    async def submit(self, message: InboundMessage) -> None:
        """Enqueue a message, waiting for room when the queue is full."""

        await self._queue.put(message)

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        LOGGER.info("Inbound queue stopped")

    async def _worker(self, index: int) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._orchestrator.handle(message)
            except TransportFatalError as exc:
                LOGGER.error("Transport lost while serving %s: %s", message.sender_id, exc)
                if self._on_transport_lost is not None:
                    self._on_transport_lost(exc)
            except Exception:
                LOGGER.exception("Worker %s failed while processing a message from %s", index, message.sender_id)
            finally:
                self._queue.task_done()
