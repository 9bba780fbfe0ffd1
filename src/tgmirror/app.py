"""Application entry point for the tgmirror channel mirror."""

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

from tgmirror import settings
from tgmirror.adapters.sqlite_storage import SQLiteStorage
from tgmirror.adapters.status_formatting import StatusFormatter
from tgmirror.adapters.telegram_source import TelegramSource
from tgmirror.client import build_client, build_target
from tgmirror.core.assembler import GroupAssembler
from tgmirror.core.attachments import AttachmentCollector
from tgmirror.core.bus import EventBus
from tgmirror.core.config import AssemblerConfig, DeliveryConfig, RateLimitConfig, WatchdogConfig
from tgmirror.core.delivery import DeliveryEngine
from tgmirror.core.models import Visibility
from tgmirror.core.rate_limiter import SlidingWindowLimiter
from tgmirror.core.rules_engine import ImportanceClassifier, build_rules
from tgmirror.core.watchdog import Watchdog
from tgmirror.get_session import login

NAME = "TGMIRROR"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


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
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/tgmirror.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)
    # Telethon is chatty at INFO about reconnects and MTProto internals.
    logging.getLogger("telethon").setLevel(max(level, logging.WARNING))
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support.
            LOGGER.debug("Signal handler for %s is not supported here", sig)


async def _mirror() -> int:
    """Run the mirror until stopped; return the process exit code."""

    stop = asyncio.Event()
    _install_signal_handlers(stop)

    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    LOGGER.info("Using database %s (%s mirrored items)", settings.DB_PATH, storage.count_mappings())

    rules = build_rules(settings.IMPORTANCE_RULES_CONFIG)
    LOGGER.info("%s importance rules are loaded", len(rules))

    source = TelegramSource(build_client(), settings.CHANNEL)
    target = build_target(settings.TARGET_INSTANCE)
    await source.start()

    bus = EventBus()
    delivery_subscription = bus.subscribe("delivery")
    watchdog_subscription = bus.subscribe("watchdog") if settings.WATCHDOG_ENABLED else None

    engine = DeliveryEngine(
        target=target,
        storage=storage,
        formatter=StatusFormatter(settings.JUNK_PATTERNS),
        collector=AttachmentCollector(source, target, settings.MAX_DESCRIPTION_LENGTH),
        classifier=ImportanceClassifier(rules),
        limiter=SlidingWindowLimiter(
            RateLimitConfig(window=settings.RATE_LIMIT_WINDOW_SECONDS, capacity=settings.RATE_LIMIT_CAPACITY)
        ),
        config=DeliveryConfig(
            channel=settings.CHANNEL,
            retry_cooldown=settings.RETRY_COOLDOWN_SECONDS,
            attachment_retry_attempts=settings.ATTACHMENT_RETRY_ATTEMPTS,
            attachment_retry_delay=settings.ATTACHMENT_RETRY_DELAY_SECONDS,
            language=settings.LANGUAGE,
            normal_visibility=Visibility(settings.NORMAL_VISIBILITY),
            important_visibility=Visibility(settings.IMPORTANT_VISIBILITY),
        ),
    )
    assembler = GroupAssembler(
        source=source,
        checkpoints=storage,
        emit=bus.publish,
        config=AssemblerConfig(flush_delay=settings.FLUSH_DELAY_SECONDS),
    )

    exit_code = 0

    def _request_restart() -> None:
        nonlocal exit_code
        LOGGER.error("Event stream looks stalled, shutting down for a restart")
        exit_code = 1
        stop.set()

    try:
        await engine.start()
        tasks = [
            asyncio.create_task(assembler.run(stop), name="assembler"),
            asyncio.create_task(engine.run(delivery_subscription, stop), name="delivery"),
        ]
        if watchdog_subscription is not None:
            watchdog = Watchdog(WatchdogConfig(threshold=settings.WATCHDOG_THRESHOLD_SECONDS), _request_restart)
            tasks.append(asyncio.create_task(watchdog.run(watchdog_subscription, stop), name="watchdog"))

        stop_waiter = asyncio.create_task(stop.wait(), name="stop")
        await asyncio.wait([stop_waiter, *tasks], return_when=asyncio.FIRST_COMPLETED)
        if not stop.is_set():
            LOGGER.error("A worker exited unexpectedly, shutting down")
            exit_code = 1
        stop.set()
        bus.complete()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                LOGGER.error("%s failed", task.get_name(), exc_info=result)
                exit_code = 1
    finally:
        bus.complete()
        await source.stop()
        LOGGER.info("Stopped")
    return exit_code


def _run() -> None:
    _print_banner()
    _configure_logging()
    LOGGER.info("Mirroring t.me/%s to %s", settings.CHANNEL, settings.TARGET_INSTANCE)

    exit_code = asyncio.run(_mirror())
    if exit_code:
        # A supervisor (systemd, docker restart policy) brings the mirror back.
        raise SystemExit(exit_code)


def _login() -> None:
    _print_banner()
    _configure_logging()
    asyncio.run(login(build_client()))


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="tgmirror")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start mirroring the channel")
    subparsers.add_parser("login", help="Log in to Telegram and save the session")

    args = parser.parse_args(argv)
    if args.command == "login":
        _login()
        return
    _run()


if __name__ == "__main__":
    main()
