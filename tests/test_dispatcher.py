from __future__ import annotations

import asyncio

import pytest

from core.config import DispatchConfig, MediaConfig
from core.conversations import ConversationTracker
from core.dispatcher import MediaUrlResolver, MessageDispatcher
from core.errors import DispatchCancelledError, TransportError, TransportFatalError
from core.models import ConversationStatus, MatchType, MediaRef, MessagePlanItem, MessageType

from fakes import FakeConversationStore, FakeDeliveryLog, FakeFetcher, FakeTransport

MEDIA = MediaConfig(base_url="https://cdn.test/")


class Harness:
    def __init__(self, transport=None, fetcher=None) -> None:
        self.transport = transport or FakeTransport()
        self.fetcher = fetcher or FakeFetcher()
        self.log = FakeDeliveryLog()
        self.store = FakeConversationStore()
        self.tracker = ConversationTracker(self.store)
        self.sleeps: list[float] = []
        self.dispatcher = MessageDispatcher(
            transport=self.transport,
            fetcher=self.fetcher,
            resolver=MediaUrlResolver(MEDIA),
            delivery_log=self.log,
            tracker=self.tracker,
            config=DispatchConfig(gallery_gap_seconds=0.5),
            sleep=self._sleep,
        )
        self.conversation_id = self.tracker.create(
            sender_id="51999",
            campaign_id=1,
            trigger_message="info",
            matched_keyword="info",
            match_type=MatchType.KEYWORD,
            origin_line="777",
        )

    async def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def run(self, plan, stop_event=None):
        return asyncio.run(
            self.dispatcher.dispatch(plan, "51999", {"name": "Ana"}, self.conversation_id, stop_event=stop_event)
        )


def _text(item_id: int, content: str, sort_order: int, delay: int = 0) -> MessagePlanItem:
    return MessagePlanItem(
        id=item_id, type=MessageType.TEXT, content_template=content, sort_order=sort_order, delay_seconds=delay
    )


def test_items_go_out_in_sort_order_with_delays() -> None:
    harness = Harness()
    plan = [_text(1, "second", 2, delay=3), _text(2, "Hola {name}", 1)]

    result = harness.run(plan)

    assert harness.transport.texts == ["Hola Ana", "second"]
    assert harness.sleeps == [3]
    assert (result.total, result.sent, result.failed) == (2, 2, 0)
    assert harness.store.get(harness.conversation_id).messages_sent == 2
    assert harness.store.get(harness.conversation_id).status is ConversationStatus.IN_PROGRESS


def test_failed_item_does_not_stop_the_plan() -> None:
    harness = Harness(transport=FakeTransport(failures={"two": TransportError("Bad request")}))
    plan = [_text(1, "one", 1), _text(2, "two", 2), _text(3, "three", 3)]

    result = harness.run(plan)

    assert (result.total, result.sent, result.failed) == (3, 2, 1)
    assert harness.transport.texts == ["one", "three"]
    assert [entry[1] for entry in harness.log.sent] == [1, 3]
    assert harness.log.failed == [(harness.conversation_id, 2, "Bad request")]


def test_fatal_transport_error_aborts() -> None:
    harness = Harness(transport=FakeTransport(failures={"two": TransportFatalError("session revoked")}))
    plan = [_text(1, "one", 1), _text(2, "two", 2), _text(3, "three", 3)]

    with pytest.raises(TransportFatalError):
        harness.run(plan)

    assert harness.transport.texts == ["one"]
    assert harness.log.failed == [(harness.conversation_id, 2, "session revoked")]


def test_media_options_per_type() -> None:
    harness = Harness()
    plan = [
        MessagePlanItem(
            id=1,
            type=MessageType.IMAGE,
            content_template="Para {name}",
            sort_order=1,
            media_refs=(MediaRef(media_type="image", locator="media/campaigns/yanachaga/a.jpg", file_name="a.jpg"),),
        ),
        MessagePlanItem(
            id=2,
            type=MessageType.AUDIO,
            sort_order=2,
            media_refs=(MediaRef(media_type="audio", locator="/audio/b.mp3", mime_type="audio/ogg"),),
        ),
        MessagePlanItem(
            id=3,
            type=MessageType.DOCUMENT,
            content_template="Brochure",
            sort_order=3,
            media_refs=(MediaRef(media_type="document", locator="https://files.test/c.pdf", file_name="c.pdf"),),
        ),
    ]

    result = harness.run(plan)

    assert result.sent == 3
    assert harness.fetcher.urls == [
        "https://cdn.test/post/a.jpg",
        "https://cdn.test/audio/b.mp3",
        "https://files.test/c.pdf",
    ]
    image, audio, document = [(payload, options) for _, payload, options in harness.transport.sent]
    assert image[0].mime_type == "image/jpeg"
    assert image[1].caption == "Para Ana"
    assert audio[0].mime_type == "audio/ogg"
    assert audio[1].voice_note
    assert document[0].file_name == "Brochure.pdf"
    assert document[1].as_document


def test_media_item_without_media_fails_alone() -> None:
    harness = Harness()
    plan = [MessagePlanItem(id=1, type=MessageType.IMAGE, sort_order=1), _text(2, "after", 2)]

    result = harness.run(plan)

    assert (result.sent, result.failed) == (1, 1)
    assert harness.transport.texts == ["after"]


def test_gallery_skips_failed_images() -> None:
    refs = tuple(
        MediaRef(media_type="image", locator=f"/g/{index}.jpg", sort_order=index, file_name=f"{index}.jpg")
        for index in (3, 1, 2)
    )
    harness = Harness(fetcher=FakeFetcher(missing={"https://cdn.test/g/2.jpg"}))

    result = harness.run([MessagePlanItem(id=1, type=MessageType.GALLERY, sort_order=1, media_refs=refs)])

    assert (result.sent, result.failed) == (1, 0)
    assert [payload.file_name for _, payload, _ in harness.transport.sent] == ["1.jpg", "3.jpg"]
    assert harness.sleeps == [0.5]
    assert harness.log.sent[0][2] == "msg-2"


def test_empty_gallery_counts_as_failed() -> None:
    harness = Harness()

    result = harness.run([MessagePlanItem(id=1, type=MessageType.GALLERY, sort_order=1)])

    assert (result.sent, result.failed) == (0, 1)


def test_stop_event_cancels_between_items() -> None:
    class StoppingTransport(FakeTransport):
        def __init__(self, event: asyncio.Event) -> None:
            super().__init__()
            self.event = event

        async def send(self, recipient, payload, options=None) -> str:
            message_id = await super().send(recipient, payload, options)
            self.event.set()
            return message_id

    async def scenario():
        stop_event = asyncio.Event()
        harness = Harness(transport=StoppingTransport(stop_event))
        plan = [_text(1, "one", 1), _text(2, "two", 2)]
        with pytest.raises(DispatchCancelledError) as excinfo:
            await harness.dispatcher.dispatch(plan, "51999", {}, harness.conversation_id, stop_event=stop_event)
        return harness, excinfo.value

    harness, error = asyncio.run(scenario())

    assert harness.transport.texts == ["one"]
    assert (error.result.total, error.result.sent, error.result.failed) == (2, 1, 0)


def test_resolver_rewrites_legacy_paths() -> None:
    resolver = MediaUrlResolver(MediaConfig(base_url="https://cdn.test"))

    assert resolver.resolve("/media/campaigns/yanachaga/x.png") == "https://cdn.test/post/x.png"
    assert resolver.resolve("uploads/x.pdf") == "https://cdn.test/uploads/x.pdf"
    assert resolver.resolve("http://other.test/x.png") == "http://other.test/x.png"


def test_pauses_use_injected_sleep_with_stop_event() -> None:
    refs = tuple(MediaRef(media_type="image", locator=f"/g/{index}.jpg", sort_order=index) for index in (1, 2))
    plan = [
        _text(1, "one", 1, delay=3),
        MessagePlanItem(id=2, type=MessageType.GALLERY, sort_order=2, media_refs=refs),
    ]

    async def scenario():
        harness = Harness()
        result = await harness.dispatcher.dispatch(
            plan, "51999", {}, harness.conversation_id, stop_event=asyncio.Event()
        )
        return harness, result

    harness, result = asyncio.run(scenario())

    assert result.sent == 2
    assert harness.sleeps == [3, 0.5]


def test_stop_event_cuts_gallery_short() -> None:
    class StoppingTransport(FakeTransport):
        def __init__(self, event: asyncio.Event) -> None:
            super().__init__()
            self.event = event

        async def send(self, recipient, payload, options=None) -> str:
            message_id = await super().send(recipient, payload, options)
            self.event.set()
            return message_id

    refs = tuple(
        MediaRef(media_type="image", locator=f"/g/{index}.jpg", sort_order=index, file_name=f"{index}.jpg")
        for index in (1, 2, 3)
    )
    plan = [
        MessagePlanItem(id=1, type=MessageType.GALLERY, sort_order=1, media_refs=refs),
        _text(2, "after", 2),
    ]

    async def scenario():
        stop_event = asyncio.Event()
        harness = Harness(transport=StoppingTransport(stop_event))
        with pytest.raises(DispatchCancelledError) as excinfo:
            await harness.dispatcher.dispatch(plan, "51999", {}, harness.conversation_id, stop_event=stop_event)
        return harness, excinfo.value

    harness, error = asyncio.run(scenario())

    assert [payload.file_name for _, payload, _ in harness.transport.sent] == ["1.jpg"]
    assert harness.sleeps == []
    assert (error.result.sent, error.result.failed) == (1, 0)
