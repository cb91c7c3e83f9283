"""Application entry point for the herald campaign bot."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.http_media import HttpMediaFetcher
from adapters.sqlite_storage import SQLiteStorage
from adapters.telegram_transport import TelegramTransport, authorize, build_client
from core.campaigns import CampaignSelector
from core.conversations import ConversationTracker
from core.dispatcher import MediaUrlResolver, MessageDispatcher
from core.orchestrator import InboundQueue, Orchestrator
from core.rate_limiter import RateLimiter

NAME = "HERALD"
FONT = "tarty-1"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = [os.getenv(name) for name in redact_cfg.get("patterns", [])]
    return sorted({value for value in values if value}, key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    formatter = _RedactingFormatter(
        _collect_redaction_values(config),
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/herald.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
            backupCount=int(file_cfg.get("backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)
    # httpx logs every request at INFO; our fetcher already does.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _open_storage() -> SQLiteStorage:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    return storage


async def _serve() -> None:
    logger = logging.getLogger(__name__)
    storage = _open_storage()
    stop_event = asyncio.Event()

    fetcher = HttpMediaFetcher(
        timeout_seconds=settings.MEDIA.timeout_seconds,
        max_bytes=settings.MEDIA_MAX_BYTES,
    )
    tracker = ConversationTracker(storage)

    # The queue and the transport reference each other; the orchestrator is
    # wired once the transport exists so it can report the origin line.
    queue: Optional[InboundQueue] = None

    async def enqueue(message) -> None:
        if queue is not None:
            await queue.submit(message)

    transport = TelegramTransport(build_client(), on_message=enqueue)
    dispatcher = MessageDispatcher(
        transport=transport,
        fetcher=fetcher,
        resolver=MediaUrlResolver(settings.MEDIA),
        delivery_log=storage,
        tracker=tracker,
        config=settings.DISPATCH,
    )
    orchestrator = Orchestrator(
        selector=CampaignSelector(storage),
        rate_limiter=RateLimiter(storage, settings.RATE_LIMITS),
        tracker=tracker,
        plans=storage,
        dispatcher=dispatcher,
        origin_line=lambda: transport.origin_line,
        stop_event=stop_event,
    )

    def on_transport_lost(exc: Exception) -> None:
        transport.mark_lost(exc)
        stop_event.set()

    queue = InboundQueue(orchestrator, settings.QUEUE, on_transport_lost=on_transport_lost)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            pass

    await transport.start()
    queue.start()
    logger.info("Listening for incoming messages...")

    disconnected = asyncio.ensure_future(transport.wait_until_disconnected())
    stopped = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({disconnected, stopped}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        # In-flight dispatches see the stop event between items and cancel
        # their conversations before the workers are torn down.
        stop_event.set()
        try:
            await asyncio.wait_for(queue.join(), timeout=settings.DISPATCH.send_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for in-flight dispatches to stop")
        await queue.stop()
        await transport.stop()
        await fetcher.close()
        for task in (disconnected, stopped):
            task.cancel()
        logger.info("Herald stopped: %s", transport.status())


def _run() -> None:
    _print_banner()
    _configure_logging()
    logging.getLogger(__name__).info("Starting herald")
    asyncio.run(_serve())


def _login() -> None:
    _print_banner()

    async def _run_login() -> None:
        client = build_client()
        await authorize(client)
        me = await client.get_me()
        print(f"Logged in as: {getattr(me, 'first_name', '')} ({me.id})")
        await client.disconnect()

    asyncio.run(_run_login())


def _init_db() -> None:
    _open_storage()
    print(f"Database ready at {settings.DB_PATH}")


def _block(sender: str, hours: Optional[float], reason: Optional[str], permanent: bool) -> None:
    limiter = RateLimiter(_open_storage(), settings.RATE_LIMITS)
    if permanent:
        limiter.block_permanently(sender, reason)
        print(f"{sender} permanently blocked")
        return
    limiter.block(sender, reason, hours)
    print(f"{sender} blocked" + (f" for {hours}h" if hours is not None else " until unblocked"))


def _unblock(sender: str) -> None:
    RateLimiter(_open_storage(), settings.RATE_LIMITS).unblock(sender)
    print(f"{sender} unblocked")


def _stats(campaign_id: int) -> None:
    storage = _open_storage()
    campaign = storage.get_campaign(campaign_id)
    if campaign is None:
        print(f"Campaign {campaign_id} not found")
        return
    stats = CampaignSelector(storage).campaign_stats(campaign_id)
    print(f"{campaign.name} (id={campaign.id}, priority={campaign.priority})")
    print(f"  conversations:    {stats.total_conversations}")
    print(f"  completed:        {stats.completed}")
    print(f"  failed:           {stats.failed}")
    print(f"  in progress:      {stats.in_progress}")
    print(f"  unique keywords:  {stats.unique_keywords}")


def _sender(sender: str) -> None:
    stats = ConversationTracker(_open_storage()).sender_stats(sender)
    print(sender)
    print(f"  conversations:    {stats.total_conversations}")
    print(f"  completed:        {stats.completed}")
    print(f"  failed:           {stats.failed}")
    print(f"  last trigger:     {stats.last_conversation_at or 'never'}")


def _active(origin_line: str) -> None:
    conversations = ConversationTracker(_open_storage()).active_for_line(origin_line)
    if not conversations:
        print(f"No active conversations on line {origin_line}")
        return
    for conversation in conversations:
        print(
            f"#{conversation.id} {conversation.sender_id} campaign={conversation.campaign_id} "
            f"status={conversation.status.value} sent={conversation.messages_sent}"
        )


def _reassign(conversation_id: int, origin_line: str) -> None:
    ConversationTracker(_open_storage()).update_origin_line(conversation_id, origin_line)
    print(f"Conversation {conversation_id} moved to line {origin_line}")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="herald")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the bot")
    subparsers.add_parser("login", help="Authorize the Telegram account (QR or phone code)")
    subparsers.add_parser("init-db", help="Create the database tables")

    block_parser = subparsers.add_parser("block", help="Block a sender from triggering campaigns")
    block_parser.add_argument("sender")
    block_parser.add_argument("--hours", type=float, default=None, help="Block duration; omit for indefinite")
    block_parser.add_argument("--reason", default=None)
    block_parser.add_argument("--permanent", action="store_true", help="Add to the permanent block list")

    unblock_parser = subparsers.add_parser("unblock", help="Lift a temporary or indefinite block")
    unblock_parser.add_argument("sender")

    stats_parser = subparsers.add_parser("stats", help="Show conversation counters for a campaign")
    stats_parser.add_argument("campaign_id", type=int)

    sender_parser = subparsers.add_parser("sender", help="Show conversation counters for a sender")
    sender_parser.add_argument("sender")

    active_parser = subparsers.add_parser("active", help="List active conversations answered by a line")
    active_parser.add_argument("--line", required=True, help="Telegram account id of the answering line")

    reassign_parser = subparsers.add_parser("reassign", help="Move a conversation to another line")
    reassign_parser.add_argument("conversation_id", type=int)
    reassign_parser.add_argument("line")

    args = parser.parse_args(argv)
    if args.command == "login":
        _login()
        return
    if args.command == "init-db":
        _init_db()
        return
    if args.command == "block":
        _block(args.sender, args.hours, args.reason, args.permanent)
        return
    if args.command == "unblock":
        _unblock(args.sender)
        return
    if args.command == "stats":
        _stats(args.campaign_id)
        return
    if args.command == "sender":
        _sender(args.sender)
        return
    if args.command == "active":
        _active(args.line)
        return
    if args.command == "reassign":
        _reassign(args.conversation_id, args.line)
        return
    _run()


if __name__ == "__main__":
    main()
