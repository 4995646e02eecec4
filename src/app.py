"""Application entry point for the bootbot IRC bot."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.sqlite_storage import SQLiteStorage
from client import build_bot
from core.errors import StoreError

NAME = "BOOTBOT"
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
    if not redact_cfg.get("enabled", True):
        return []
    values = []
    for name in redact_cfg.get("patterns", ["IRC_PASSWORD", "NICKSERV_PASSWORD"]):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", True):
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
        path = file_cfg.get("path", "logs/bootbot.log")
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


def _open_storage() -> SQLiteStorage:
    """Open the store or exit: running without persistence is not an option."""

    storage = SQLiteStorage(settings.DB_PATH)
    try:
        storage.init_db()
    except StoreError as exc:
        logging.getLogger(__name__).critical("Cannot open database %s: %s", settings.DB_PATH, exc)
        raise SystemExit(f"bootbot: cannot open database {settings.DB_PATH}: {exc}") from exc
    return storage


async def _serve(storage: SQLiteStorage) -> None:
    logger = logging.getLogger(__name__)
    bot = build_bot(storage)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, bot.connection.request_shutdown)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises.
            pass

    logger.info(
        "Connecting to %s:%s as %s",
        settings.SERVER_HOST,
        settings.SERVER_PORT,
        settings.NICKNAME,
    )
    try:
        await bot.connection.run()
    finally:
        await bot.http.close()


def _run() -> None:
    _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)

    logger.info("Starting bootbot")
    storage = _open_storage()
    try:
        asyncio.run(_serve(storage))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    logger.info("Stopped")


def _check() -> None:
    _configure_logging()
    storage = _open_storage()
    counts = storage.counts()
    print(f"database: {settings.DB_PATH}")
    print(f"seen records: {counts['seen']}")
    print(f"pending memos: {counts['pending']}")
    print(f"delivered memos: {counts['delivered']}")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="bootbot")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Connect and serve until interrupted")
    subparsers.add_parser("check", help="Open the database and print record counts")

    args = parser.parse_args(argv)
    if args.command == "check":
        _check()
        return
    _run()


if __name__ == "__main__":
    main(sys.argv[1:])
