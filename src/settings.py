"""Static configuration for bootbot.

All user-editable settings (server, channels, throttle, handlers, logging)
live in a single JSON file for quick edits without touching Python. Secrets
stay in the environment (see client.py).
"""

import json
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# The config path can be overridden to run several bots from one checkout.
CONFIG_PATH = os.environ.get("BOOTBOT_CONFIG") or os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Server connection. Channels are joined in order and replayed on reconnect.
_server = _CONFIG.get("server", {})
SERVER_HOST = _server.get("host", "irc.libera.chat")
SERVER_PORT = int(_server.get("port", 6697))
SERVER_TLS = bool(_server.get("tls", True))
NICKNAME = _server.get("nickname", "boot")
USERNAME = _server.get("username", NICKNAME)
REALNAME = _server.get("realname", "bootbot")
CHANNELS = tuple(_server.get("channels", []))
JOIN_ON_INVITE = bool(_server.get("join_on_invite", False))
CONNECT_TIMEOUT = float(_server.get("connect_timeout", 15))
REGISTER_TIMEOUT = float(_server.get("register_timeout", 60))
JOIN_TIMEOUT = float(_server.get("join_timeout", 10))
# Nicknames whose lines are ignored entirely (other bots, bridges).
IGNORED_NICKS = frozenset(_server.get("ignored_nicks", []))

# Reconnect backoff: base * multiplier^(n-1), capped, with +/- jitter.
_backoff = _CONFIG.get("backoff", {})
BACKOFF_BASE_DELAY = float(_backoff.get("base_delay", 2))
BACKOFF_MAX_DELAY = float(_backoff.get("max_delay", 300))
BACKOFF_MULTIPLIER = float(_backoff.get("multiplier", 2))
BACKOFF_JITTER = float(_backoff.get("jitter", 0.1))

# Flood control: at most THROTTLE_CAPACITY lines per THROTTLE_PERIOD seconds.
_throttle = _CONFIG.get("throttle", {})
THROTTLE_CAPACITY = int(_throttle.get("capacity", 4))
THROTTLE_PERIOD = float(_throttle.get("period", 8))

# Memo delivery cap per utterance keeps a backlog from flooding a channel.
_notifications = _CONFIG.get("notifications", {})
PER_TURN_CAP = int(_notifications.get("per_turn_cap", 2))

# Handler settings.
_handlers = _CONFIG.get("handlers", {})
ENABLED_HANDLERS = tuple(
    _handlers.get("enabled", ["help", "repo", "seen", "tell", "weather", "price", "titles"])
)
HANDLER_TIMEOUT = float(_handlers.get("timeout", 12))
SHUTDOWN_GRACE = float(_handlers.get("shutdown_grace", 5))
SNIPPET_CHARS = int(_handlers.get("snippet_chars", 300))
REPO_URL = _handlers.get("repo_url", "https://github.com/niall-/boot")
TITLE_FETCH_KB = int(_handlers.get("title_fetch_kb", 256))
TITLE_MAX_URLS = int(_handlers.get("title_max_urls", 3))
# Per-page budget; keep it below the handler timeout.
TITLE_FETCH_TIMEOUT = float(_handlers.get("title_fetch_timeout", 8))
USER_AGENT = _handlers.get("user_agent", "Mozilla/5.0 bootbot/1.3.0")
WEATHER_URL = _handlers.get("weather_url", "https://wttr.in")
PRICE_URL = _handlers.get("price_url", "https://api.coingecko.com/api/v3")
PRICE_CURRENCY = _handlers.get("price_currency", "usd")

# Where to store the SQLite database.
DB_PATH = _resolve_path(_CONFIG.get("database", {}).get("path", "bootbot.db"))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
