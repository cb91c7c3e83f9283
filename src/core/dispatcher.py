"""Paced, sequential delivery of a campaign message plan.

Items go out one at a time in ``sort_order`` so the recipient sees them in
the configured order with the configured pauses. A failed item is logged and
counted; only a transport-fatal error (session gone) aborts the plan.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Mapping, Optional, Sequence, Union

from core.config import DispatchConfig, MediaConfig
from core.conversations import ConversationTracker
from core.errors import DispatchCancelledError, MediaFetchError, TransportFatalError
from core.models import (
    DispatchResult,
    MediaAttachment,
    MediaRef,
    MessagePlanItem,
    MessageType,
    SendOptions,
)
from core.ports import DeliveryLog, MediaFetcher, TransportPort
from core.text import render_template

LOGGER = logging.getLogger(__name__)

DEFAULT_MIME_TYPES = {
    MessageType.IMAGE: "image/jpeg",
    MessageType.AUDIO: "audio/mpeg",
    MessageType.DOCUMENT: "application/pdf",
    MessageType.GALLERY: "image/jpeg",
}


class MediaUrlResolver:
    """Turn a stored media locator into a downloadable URL."""

    def __init__(self, config: MediaConfig) -> None:
        self._config = config

    def resolve(self, locator: str) -> str:
        if locator.startswith(("http://", "https://")):
            return locator

        path = locator.lstrip("/")
        # Files uploaded under the old storage layout are served from the
        # content host's public directory.
        legacy = self._config.legacy_prefix
        if legacy and path.startswith(legacy):
            path = self._config.public_prefix + path[len(legacy):]

        return f"{self._config.base_url.rstrip('/')}/{path}"


class MessageDispatcher:
    def __init__(
        self,
        transport: TransportPort,
        fetcher: MediaFetcher,
        resolver: MediaUrlResolver,
        delivery_log: DeliveryLog,
        tracker: ConversationTracker,
        config: DispatchConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._fetcher = fetcher
        self._resolver = resolver
        self._delivery_log = delivery_log
        self._tracker = tracker
        self._config = config
        self._sleep = sleep

    async def dispatch(
        self,
        plan: Sequence[MessagePlanItem],
        recipient: str,
        variables: Mapping[str, str],
        conversation_id: int,
        stop_event: Optional[asyncio.Event] = None,
    ) -> DispatchResult:
        """Deliver ``plan`` to ``recipient`` and return the outcome counts.

        ``stop_event`` is checked between items (and interrupts delays); when
        set, DispatchCancelledError is raised with the partial result.
        """

        ordered = sorted(plan, key=lambda item: item.sort_order)
        total = len(ordered)
        sent = 0
        failed = 0
        LOGGER.info("Dispatching %s messages to %s (conversation %s)", total, recipient, conversation_id)

        for position, item in enumerate(ordered, start=1):
            self._raise_if_stopped(stop_event, total, sent, failed)
            if item.delay_seconds > 0:
                LOGGER.debug("Waiting %ss before message %s/%s", item.delay_seconds, position, total)
                await self._pause(item.delay_seconds, stop_event)
                self._raise_if_stopped(stop_event, total, sent, failed)

            LOGGER.info(
                "Sending message %s/%s type=%s conversation=%s", position, total, item.type.value, conversation_id
            )
            try:
                message_id = await self._send_item(item, recipient, variables, stop_event)
            except TransportFatalError as exc:
                LOGGER.error("Transport lost while sending item %s; aborting dispatch", item.id)
                self._log_failed(conversation_id, item.id, str(exc))
                raise
            except Exception as exc:
                LOGGER.error("Message %s (item %s) failed: %s", position, item.id, exc)
                self._log_failed(conversation_id, item.id, str(exc) or type(exc).__name__)
                failed += 1
                continue

            self._log_sent(conversation_id, item.id, message_id)
            self._tracker.increment_sent(conversation_id)
            sent += 1
            LOGGER.info("Message %s/%s sent", position, total)

        LOGGER.info("Dispatch finished: %s sent, %s failed", sent, failed)
        return DispatchResult(total=total, sent=sent, failed=failed)

    async def _send_item(
        self,
        item: MessagePlanItem,
        recipient: str,
        variables: Mapping[str, str],
        stop_event: Optional[asyncio.Event] = None,
    ) -> str:
        if item.type is MessageType.TEXT:
            return await self._send(recipient, render_template(item.content_template, variables))
        if item.type is MessageType.GALLERY:
            return await self._send_gallery(item, recipient, stop_event)

        media = self._first_media(item)
        caption = render_template(item.content_template, variables)
        if item.type is MessageType.IMAGE:
            attachment = await self._download(item, media)
            return await self._send(recipient, attachment, SendOptions(caption=caption))
        if item.type is MessageType.AUDIO:
            attachment = await self._download(item, media)
            return await self._send(recipient, attachment, SendOptions(voice_note=True))
        if item.type is MessageType.DOCUMENT:
            attachment = await self._download(item, media, file_name=self._config.document_filename)
            return await self._send(recipient, attachment, SendOptions(caption=caption, as_document=True))

        raise ValueError(f"Unsupported message type: {item.type}")

    async def _send_gallery(
        self,
        item: MessagePlanItem,
        recipient: str,
        stop_event: Optional[asyncio.Event] = None,
    ) -> str:
        if not item.media_refs:
            raise MediaFetchError(f"No images configured for gallery item {item.id}")

        refs = sorted(item.media_refs, key=lambda ref: ref.sort_order)
        LOGGER.info("Sending gallery of %s images", len(refs))
        last_message_id: Optional[str] = None
        for index, ref in enumerate(refs, start=1):
            try:
                attachment = await self._download(item, ref)
                last_message_id = await self._send(recipient, attachment)
                LOGGER.debug("Gallery image %s/%s sent", index, len(refs))
            except TransportFatalError:
                raise
            except Exception as exc:
                LOGGER.error("Gallery image %s/%s failed: %s", index, len(refs), exc)
                continue
            if index < len(refs) and self._config.gallery_gap_seconds > 0:
                await self._pause(self._config.gallery_gap_seconds, stop_event)
                if stop_event is not None and stop_event.is_set():
                    LOGGER.info("Stop requested; gallery cut short after %s/%s images", index, len(refs))
                    break

        return last_message_id or f"GALLERY_{int(time.time() * 1000)}"

    @staticmethod
    def _first_media(item: MessagePlanItem) -> MediaRef:
        if not item.media_refs:
            raise MediaFetchError(f"No media configured for {item.type.value.lower()} item {item.id}")
        return min(item.media_refs, key=lambda ref: ref.sort_order)

    async def _download(
        self,
        item: MessagePlanItem,
        ref: MediaRef,
        file_name: Optional[str] = None,
    ) -> MediaAttachment:
        url = self._resolver.resolve(ref.locator)
        LOGGER.info("Downloading media from %s", url)
        data = await self._fetcher.fetch(url)
        return MediaAttachment(
            data=data,
            mime_type=ref.mime_type or DEFAULT_MIME_TYPES[item.type],
            file_name=file_name or ref.file_name or "file",
        )

    async def _send(
        self,
        recipient: str,
        payload: Union[str, MediaAttachment],
        options: Optional[SendOptions] = None,
    ) -> str:
        # The transport has no deadline of its own; a hung send must not stall
        # the whole plan.
        return await asyncio.wait_for(
            self._transport.send(recipient, payload, options),
            timeout=self._config.send_timeout_seconds,
        )

    async def _pause(self, seconds: float, stop_event: Optional[asyncio.Event]) -> None:
        """Sleep for ``seconds``, returning early once ``stop_event`` is set."""

        if stop_event is None:
            await self._sleep(seconds)
            return
        if stop_event.is_set():
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, stopper):
                task.cancel()

    @staticmethod
    def _raise_if_stopped(stop_event: Optional[asyncio.Event], total: int, sent: int, failed: int) -> None:
        if stop_event is not None and stop_event.is_set():
            raise DispatchCancelledError(
                "Dispatch stopped on request",
                result=DispatchResult(total=total, sent=sent, failed=failed),
            )

    def _log_sent(self, conversation_id: int, item_id: int, message_id: str) -> None:
        try:
            self._delivery_log.log_sent(conversation_id, item_id, message_id)
        except Exception:
            LOGGER.exception("Could not record sent message %s for conversation %s", item_id, conversation_id)

    def _log_failed(self, conversation_id: int, item_id: int, error_text: str) -> None:
        try:
            self._delivery_log.log_failed(conversation_id, item_id, error_text)
        except Exception:
            LOGGER.exception("Could not record failed message %s for conversation %s", item_id, conversation_id)
