"""Telegram transport service.

Owns the Telethon client for its whole lifetime: the inbound handler is
registered once at construction, and ``start``/``stop``/``status`` are the
only lifecycle entry points.
"""

from __future__ import annotations

import io
import logging
import mimetypes
import os
from getpass import getpass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import qrcode
from dotenv import load_dotenv
from telethon import TelegramClient, errors, events

from adapters.telegram_mapper import build_inbound
from core.errors import TransportError, TransportFatalError
from core.models import InboundMessage, MediaAttachment, SendOptions

LOGGER = logging.getLogger(__name__)

# RPC errors meaning the session is unusable, not just one failed send.
_FATAL_RPC_ERRORS = (
    errors.AuthKeyUnregisteredError,
    errors.AuthKeyDuplicatedError,
    errors.SessionRevokedError,
    errors.SessionExpiredError,
    errors.UserDeactivatedError,
    errors.UserDeactivatedBanError,
)


def build_client() -> TelegramClient:
    """Create the Telethon client from API_ID, API_HASH and SESSION_NAME.

    Values are read via python-dotenv; the session file defaults to
    "herald.session" in the working directory.
    """

    load_dotenv()
    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")
    # Fail fast on missing credentials to avoid an ambiguous login prompt.
    if not api_id or not api_hash:
        raise RuntimeError("Missing API_ID or API_HASH in environment")

    LOGGER.info("Initializing Telegram client")
    return TelegramClient(os.getenv("SESSION_NAME", "herald"), int(api_id), api_hash)


def _attachment_stream(attachment: MediaAttachment) -> io.BytesIO:
    # Telethon infers the media kind from the stream name's extension.
    name = attachment.file_name
    if "." not in name:
        name += mimetypes.guess_extension(attachment.mime_type) or ""
    stream = io.BytesIO(attachment.data)
    stream.name = name
    return stream


def _peer(recipient: str) -> Union[int, str]:
    return int(recipient) if recipient.lstrip("-").isdigit() else recipient


class TelegramTransport:
    """Inbound events in, outbound sends out, over one Telegram account."""

    def __init__(
        self,
        client: TelegramClient,
        on_message: Callable[[InboundMessage], Awaitable[None]],
    ) -> None:
        self._client = client
        self._on_message = on_message
        self._ready = False
        self._account_id: Optional[str] = None
        self._last_error: Optional[str] = None
        client.add_event_handler(self._handle_new_message, events.NewMessage(incoming=True))

    @property
    def origin_line(self) -> Optional[str]:
        return self._account_id

    async def start(self) -> None:
        """Connect and verify the stored session; run ``login`` first if needed."""

        if self._ready:
            LOGGER.warning("Telegram transport already started")
            return

        await self._client.connect()
        if not await self._client.is_user_authorized():
            await self._client.disconnect()
            raise RuntimeError("Telegram session is not authorized; run the 'login' command first")

        me = await self._client.get_me()
        self._account_id = str(me.id)
        self._ready = True
        self._last_error = None
        LOGGER.info("Telegram transport connected as %s (%s)", getattr(me, "first_name", ""), self._account_id)

    async def stop(self) -> None:
        self._ready = False
        if self._client.is_connected():
            await self._client.disconnect()
        LOGGER.info("Telegram transport stopped")

    async def wait_until_disconnected(self) -> None:
        await self._client.disconnected

    def status(self) -> Dict[str, Any]:
        return {
            "ready": self._ready,
            "connected": self._client.is_connected(),
            "account": self._account_id,
            "last_error": self._last_error,
        }

    def mark_lost(self, exc: Exception) -> None:
        """Record that the session died underneath a dispatch."""

        self._ready = False
        self._last_error = str(exc)
        LOGGER.error("Telegram transport lost: %s", exc)

    async def send(
        self,
        recipient: str,
        payload: Union[str, MediaAttachment],
        options: Optional[SendOptions] = None,
    ) -> str:
        options = options or SendOptions()
        peer = _peer(recipient)
        try:
            if isinstance(payload, str):
                message = await self._client.send_message(peer, payload)
            else:
                message = await self._client.send_file(
                    peer,
                    _attachment_stream(payload),
                    caption=options.caption or None,
                    voice_note=options.voice_note,
                    force_document=options.as_document,
                )
        except ConnectionError as exc:
            raise TransportFatalError(f"Telegram connection closed: {exc}") from exc
        except _FATAL_RPC_ERRORS as exc:
            raise TransportFatalError(f"Telegram session closed: {exc}") from exc
        except errors.RPCError as exc:
            raise TransportError(f"Telegram rejected the message: {exc}") from exc
        return str(message.id)

    async def _handle_new_message(self, event) -> None:
        try:
            message = await build_inbound(event)
            await self._on_message(message)
        except Exception:
            LOGGER.exception("Error while receiving a message")


def _print_qr(url: str) -> None:
    qr = qrcode.QRCode(border=1)
    qr.add_data(url)
    qr.make(fit=True)
    qr.print_ascii(invert=True)


def _two_factor_password() -> str:
    return os.getenv("2FA") or getpass("2FA password: ")


async def authorize(client: TelegramClient) -> None:
    """Interactively log the bot account in, by QR code or phone code.

    LOGIN_METHOD=qr|phone skips the prompt; PHONE and 2FA are read from the
    environment when set.
    """

    if not client.is_connected():
        await client.connect()
    if await client.is_user_authorized():
        LOGGER.info("Telegram session already authorized")
        return

    method = (os.getenv("LOGIN_METHOD") or "").strip().lower()
    while method not in {"qr", "phone"}:
        choice = input("Login with [1] QR code or [2] phone code: ").strip()
        method = {"1": "qr", "2": "phone"}.get(choice, "")

    try:
        if method == "qr":
            login = await client.qr_login()
            _print_qr(login.url)
            await login.wait(timeout=120)
        else:
            phone = os.getenv("PHONE") or input("Phone number (international format): ").strip()
            await client.send_code_request(phone)
            code = input("Login code: ").strip()
            await client.sign_in(phone=phone, code=code)
    except errors.SessionPasswordNeededError:
        await client.sign_in(password=_two_factor_password())
