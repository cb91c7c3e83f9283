from __future__ import annotations

import asyncio
from types import SimpleNamespace

import httpx
import pytest

from adapters.http_media import HttpMediaFetcher
from adapters.telegram_mapper import build_inbound, display_name
from core.errors import MediaFetchError


class FakeEvent:
    def __init__(self, *, chat_id: int, text: str, is_private: bool = True, out: bool = False, sender=None) -> None:
        self.chat_id = chat_id
        self.raw_text = text
        self.is_private = is_private
        self.out = out
        self._sender = sender
        self.sender_lookups = 0

    async def get_sender(self):
        self.sender_lookups += 1
        return self._sender


def test_private_message_maps_sender() -> None:
    event = FakeEvent(chat_id=51999, text="info", sender=SimpleNamespace(first_name="Ana", last_name="Quispe"))

    message = asyncio.run(build_inbound(event))

    assert message.sender_id == "51999"
    assert message.text == "info"
    assert message.sender_display_name == "Ana Quispe"
    assert not message.is_group
    assert not message.is_self


def test_group_message_skips_sender_lookup() -> None:
    event = FakeEvent(chat_id=-100123, text="info", is_private=False)

    message = asyncio.run(build_inbound(event))

    assert message.is_group
    assert event.sender_lookups == 0
    assert message.sender_display_name is None


def test_display_name_fallbacks() -> None:
    assert display_name(SimpleNamespace(first_name=None, last_name=None, username="ana_q")) == "ana_q"
    assert display_name(SimpleNamespace(title="Eco Lodge")) == "Eco Lodge"
    assert display_name(None) is None


def _fetcher(handler, max_bytes=None) -> HttpMediaFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpMediaFetcher(timeout_seconds=5, max_bytes=max_bytes, http_client=client)


def test_fetch_returns_body() -> None:
    async def scenario():
        fetcher = _fetcher(lambda request: httpx.Response(200, content=b"jpeg-bytes"))
        try:
            return await fetcher.fetch("https://cdn.test/post/a.jpg")
        finally:
            await fetcher.close()

    assert asyncio.run(scenario()) == b"jpeg-bytes"


@pytest.mark.parametrize(
    "handler, max_bytes",
    [
        (lambda request: httpx.Response(404), None),
        (lambda request: httpx.Response(200, content=b"0123456789"), 4),
    ],
)
def test_fetch_errors_become_media_errors(handler, max_bytes) -> None:
    async def scenario():
        fetcher = _fetcher(handler, max_bytes=max_bytes)
        try:
            await fetcher.fetch("https://cdn.test/post/a.jpg")
        finally:
            await fetcher.close()

    with pytest.raises(MediaFetchError):
        asyncio.run(scenario())


def test_fetch_timeout_becomes_media_error() -> None:
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async def scenario():
        fetcher = _fetcher(handler)
        try:
            await fetcher.fetch("https://cdn.test/post/a.jpg")
        finally:
            await fetcher.close()

    with pytest.raises(MediaFetchError, match="Timed out"):
        asyncio.run(scenario())


def test_adapters_is_a_regular_package() -> None:
    import adapters

    # Namespace packages have no __file__ and are skipped by packages.find.
    assert adapters.__file__ is not None
    assert adapters.__file__.endswith("__init__.py")
