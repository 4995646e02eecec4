"""IRC client factory for bootbot.

We explicitly build every runtime piece (store, throttle, router, handlers,
connection manager) here so it is obvious what a running bot is made of.
Nothing connects until ConnectionManager.run() is awaited.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

import settings
from adapters.http_providers import HttpClient, PriceProvider, TitleFetcher, WeatherProvider
from adapters.sqlite_storage import SQLiteStorage
from core.config import BackoffConfig, RouterConfig, ServerConfig, ThrottleConfig
from core.connection import ConnectionManager
from core.handlers import (
    HelpHandler,
    ProviderHandler,
    SeenHandler,
    StaticTextHandler,
    TellHandler,
    UrlTitleHandler,
)
from core.router import CommandRouter
from core.throttle import OutboundThrottle

LOGGER = logging.getLogger(__name__)


@dataclass
class Bot:
    """Everything the app needs to run and to shut down cleanly."""

    connection: ConnectionManager
    router: CommandRouter
    storage: SQLiteStorage
    http: HttpClient


def build_server_config() -> ServerConfig:
    """Create the server config from settings plus environment secrets.

    IRC_PASSWORD and NICKSERV_PASSWORD are read via python-dotenv to keep
    secrets out of config.json.
    """

    load_dotenv()
    return ServerConfig(
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        tls=settings.SERVER_TLS,
        nickname=settings.NICKNAME,
        username=settings.USERNAME,
        realname=settings.REALNAME,
        channels=settings.CHANNELS,
        password=os.getenv("IRC_PASSWORD") or None,
        nickserv_password=os.getenv("NICKSERV_PASSWORD") or None,
        join_on_invite=settings.JOIN_ON_INVITE,
        connect_timeout=settings.CONNECT_TIMEOUT,
        register_timeout=settings.REGISTER_TIMEOUT,
        join_timeout=settings.JOIN_TIMEOUT,
    )


def register_handlers(router: CommandRouter, http: HttpClient) -> None:
    """Register enabled handlers; registration order is match priority."""

    enabled = set(settings.ENABLED_HANDLERS)
    if "help" in enabled:
        router.register(HelpHandler(router.usages))
    if "repo" in enabled:
        router.register(StaticTextHandler("repo", settings.REPO_URL))
    if "seen" in enabled:
        router.register(SeenHandler())
    if "tell" in enabled:
        router.register(TellHandler())
    if "weather" in enabled:
        router.register(
            ProviderHandler(
                "weather",
                WeatherProvider(http, settings.WEATHER_URL),
                "weather [location]",
                remember_location=True,
            )
        )
    if "price" in enabled:
        router.register(
            ProviderHandler(
                "price",
                PriceProvider(http, settings.PRICE_URL, settings.PRICE_CURRENCY),
                "price <coin>",
            )
        )
    # Titles last: addressed commands containing URLs belong to their command.
    if "titles" in enabled:
        router.register(
            UrlTitleHandler(
                TitleFetcher(http, settings.TITLE_FETCH_KB),
                settings.TITLE_MAX_URLS,
                fetch_timeout=min(settings.TITLE_FETCH_TIMEOUT, settings.HANDLER_TIMEOUT * 0.75),
            )
        )


def build_bot(storage: SQLiteStorage) -> Bot:
    """Wire the runtime around an already-initialized store."""

    throttle = OutboundThrottle(
        ThrottleConfig(capacity=settings.THROTTLE_CAPACITY, period=settings.THROTTLE_PERIOD)
    )
    router = CommandRouter(
        storage=storage,
        throttle=throttle,
        config=RouterConfig(
            per_turn_cap=settings.PER_TURN_CAP,
            handler_timeout=settings.HANDLER_TIMEOUT,
            shutdown_grace=settings.SHUTDOWN_GRACE,
            snippet_chars=settings.SNIPPET_CHARS,
            ignored_nicks=settings.IGNORED_NICKS,
        ),
    )
    http = HttpClient(timeout=settings.HANDLER_TIMEOUT, user_agent=settings.USER_AGENT)
    register_handlers(router, http)
    LOGGER.info("%s commands are registered", len(router.usages()))

    connection = ConnectionManager(
        build_server_config(),
        router,
        throttle,
        BackoffConfig(
            base_delay=settings.BACKOFF_BASE_DELAY,
            max_delay=settings.BACKOFF_MAX_DELAY,
            multiplier=settings.BACKOFF_MULTIPLIER,
            jitter=settings.BACKOFF_JITTER,
        ),
        flush_timeout=settings.SHUTDOWN_GRACE,
    )
    return Bot(connection=connection, router=router, storage=storage, http=http)
