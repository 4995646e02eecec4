"""Connection manager: owns the transport and the session state machine.

States: DISCONNECTED -> CONNECTING -> AUTHENTICATING -> JOINED, back to
DISCONNECTED on any I/O error or server ERROR, and SHUTTING_DOWN only on an
explicit request. Keepalive PINGs are answered inline and never go through
the outbound throttle.
"""

from __future__ import annotations

import asyncio
import logging
import random
import ssl
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, Set, Tuple

from core.config import BackoffConfig, ServerConfig
from core.errors import ProtocolDecodeError, TransportError
from core.models import OutboundMessage, ParsedMessage, is_channel_name
from core.protocol import decode, encode, irc_lower
from core.throttle import OutboundThrottle

LOGGER = logging.getLogger(__name__)

RPL_WELCOME = "001"
NICK_REJECTIONS = {"432", "433", "436", "437"}
JOIN_FAILURES = {"403", "405", "471", "473", "474", "475", "477"}
QUIT_MESSAGE = "shutting down"
QUIT_TIMEOUT = 2.0

OpenConnection = Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class ConnectionState(Enum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    AUTHENTICATING = auto()
    JOINED = auto()
    SHUTTING_DOWN = auto()


class MessageSink(Protocol):
    """Consumer of inbound messages (the command router)."""

    async def handle(self, message: ParsedMessage, current_nick: str) -> None:
        ...

    async def shutdown(self, grace: Optional[float] = None) -> None:
        ...

    def release_unsent(self, messages: Sequence[OutboundMessage]) -> None:
        ...


@dataclass
class Session:
    """Per-connection state, rebuilt on every reconnect."""

    nickname: str
    channels: List[str]
    backoff_attempt: int = 0
    joined: Set[str] = field(default_factory=set)


def fallback_nick(nickname: str, attempt: int) -> str:
    """Deterministic alternative nickname for the n-th collision."""

    return nickname + "_" * attempt


class ConnectionManager:
    """Drives one server connection, reconnecting with capped exponential backoff."""

    def __init__(
        self,
        config: ServerConfig,
        sink: MessageSink,
        throttle: OutboundThrottle,
        backoff: BackoffConfig = BackoffConfig(),
        *,
        open_connection: OpenConnection = asyncio.open_connection,
        rng: Callable[[], float] = random.random,
        state_listener: Optional[Callable[[ConnectionState], None]] = None,
        flush_timeout: float = 5.0,
    ) -> None:
        self._config = config
        self._sink = sink
        self._throttle = throttle
        self._backoff = backoff
        self._open_connection = open_connection
        self._rng = rng
        self._state_listener = state_listener
        self._flush_timeout = flush_timeout
        self._state = ConnectionState.DISCONNECTED
        # Survives reconnects: configured channels plus any joined by invite.
        self._channels: List[str] = list(config.channels)
        self._failures = 0
        self._shutdown = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self._session: Optional[Session] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def channels(self) -> List[str]:
        return list(self._channels)

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def _set_state(self, new_state: ConnectionState) -> None:
        if self._state is new_state:
            return
        LOGGER.info("Connection state %s -> %s", self._state.name, new_state.name)
        self._state = new_state
        if self._state_listener is not None:
            self._state_listener(new_state)

    def request_shutdown(self) -> None:
        """Ask the run loop to stop; safe to call from a signal handler."""

        if self._state is not ConnectionState.SHUTTING_DOWN:
            LOGGER.info("Shutdown requested")
        self._shutdown.set()

    def next_backoff_delay(self) -> float:
        """Delay before the next reconnect, based on consecutive failures."""

        attempt = max(1, self._failures)
        delay = self._backoff.base_delay * (self._backoff.multiplier ** (attempt - 1))
        delay = min(delay, self._backoff.max_delay)
        if self._backoff.jitter:
            delay *= 1 + self._backoff.jitter * (2 * self._rng() - 1)
        return max(0.0, min(delay, self._backoff.max_delay))

    async def run(self) -> None:
        """Keep a session alive until shutdown is requested."""

        while not self._shutdown.is_set():
            session_task = asyncio.create_task(self._run_session())
            shutdown_task = asyncio.create_task(self._shutdown.wait())
            done, _ = await asyncio.wait(
                {session_task, shutdown_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if shutdown_task in done:
                joined = self._state is ConnectionState.JOINED
                self._set_state(ConnectionState.SHUTTING_DOWN)
                # Handlers get their grace period while the writer still drains.
                await self._sink.shutdown()
                if joined:
                    await self._flush_outbound()
                session_task.cancel()
                await asyncio.gather(session_task, return_exceptions=True)
                break

            shutdown_task.cancel()
            exc = session_task.exception()
            if isinstance(exc, TransportError):
                LOGGER.warning("Connection lost: %s", exc)
            elif exc is not None:
                LOGGER.error("Session failed unexpectedly", exc_info=exc)

            self._set_state(ConnectionState.DISCONNECTED)
            self._failures += 1
            delay = self.next_backoff_delay()
            LOGGER.warning("Reconnecting in %.1fs (attempt %s)", delay, self._failures)
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

        if self._state is not ConnectionState.SHUTTING_DOWN:
            self._set_state(ConnectionState.SHUTTING_DOWN)
            await self._sink.shutdown()
        unsent = self._throttle.clear()
        if unsent:
            LOGGER.warning("Dropping %s unsent line(s)", len(unsent))
            self._sink.release_unsent(unsent)
        LOGGER.info("Connection manager stopped")

    async def _open(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        ssl_context = ssl.create_default_context() if self._config.tls else None
        try:
            return await asyncio.wait_for(
                self._open_connection(self._config.host, self._config.port, ssl=ssl_context),
                timeout=self._config.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportError(
                f"cannot connect to {self._config.host}:{self._config.port}: {exc!r}"
            ) from exc

    async def _run_session(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        reader, writer = await self._open()
        session = Session(
            nickname=self._config.nickname,
            channels=list(self._channels),
            backoff_attempt=self._failures,
        )
        self._session = session
        try:
            self._set_state(ConnectionState.AUTHENTICATING)
            try:
                await asyncio.wait_for(
                    self._register(reader, writer, session),
                    timeout=self._config.register_timeout,
                )
            except asyncio.TimeoutError as exc:
                raise TransportError("registration timed out") from exc

            await self._join_channels(reader, writer, session)
            self._set_state(ConnectionState.JOINED)
            self._failures = 0

            drain_task = asyncio.create_task(self._drain_outbound(writer))
            read_task = asyncio.create_task(self._read_loop(reader, writer, session))
            try:
                done, _ = await asyncio.wait(
                    {drain_task, read_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in done:
                    task.result()
                raise TransportError("session ended")
            finally:
                for task in (drain_task, read_task):
                    task.cancel()
                await asyncio.gather(drain_task, read_task, return_exceptions=True)
        finally:
            if self._shutdown.is_set():
                await self._send_quit(writer)
            await self._close(writer)
            self._session = None

    async def _register(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        session: Session,
    ) -> None:
        if self._config.password:
            await self._write(writer, OutboundMessage("PASS", (self._config.password,)))
        await self._write(writer, OutboundMessage("NICK", (session.nickname,)))
        await self._write(
            writer,
            OutboundMessage("USER", (self._config.username, "0", "*"), self._config.realname),
        )

        attempts = 0
        while True:
            message = await self._next_message(reader, writer)
            if message.command == RPL_WELCOME:
                if message.params:
                    session.nickname = message.params[0]
                LOGGER.info("Registered as %s", session.nickname)
                break
            if message.command in NICK_REJECTIONS:
                attempts += 1
                if attempts > self._config.max_nick_attempts:
                    raise TransportError("no acceptable nickname")
                session.nickname = fallback_nick(self._config.nickname, attempts)
                LOGGER.warning("Nickname rejected (%s), trying %s", message.command, session.nickname)
                await self._write(writer, OutboundMessage("NICK", (session.nickname,)))

        if self._config.nickserv_password:
            await self._write(
                writer,
                OutboundMessage("PRIVMSG", ("NickServ",), f"IDENTIFY {self._config.nickserv_password}"),
            )

    async def _join_channels(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        session: Session,
    ) -> None:
        pending = {irc_lower(channel) for channel in session.channels}
        for channel in session.channels:
            await self._write(writer, OutboundMessage("JOIN", (channel,)))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.join_timeout
        while pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                message = await asyncio.wait_for(self._next_message(reader, writer), timeout=remaining)
            except asyncio.TimeoutError:
                break
            if message.command == "JOIN" and self._is_self(message.nick, session):
                channel = message.args[0] if message.args else ""
                pending.discard(irc_lower(channel))
                session.joined.add(channel)
            elif message.command in JOIN_FAILURES and len(message.params) >= 2:
                LOGGER.warning("Cannot join %s: %s", message.params[1], message.trailing)
                pending.discard(irc_lower(message.params[1]))
            else:
                await self._on_message(writer, message, session)

        if pending:
            LOGGER.warning("Join not confirmed for %s; continuing", ", ".join(sorted(pending)))

    async def _read_loop(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        session: Session,
    ) -> None:
        while True:
            message = await self._next_message(reader, writer)
            await self._on_message(writer, message, session)

    async def _next_message(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> ParsedMessage:
        """Return the next message, answering keepalives and dropping bad lines."""

        while True:
            try:
                raw = await reader.readline()
            except ValueError:
                LOGGER.debug("Dropped oversized line")
                continue
            except OSError as exc:
                raise TransportError(f"read failed: {exc!r}") from exc
            if not raw:
                raise TransportError("connection closed by server")
            if not raw.strip():
                continue
            try:
                message = decode(raw)
            except ProtocolDecodeError as exc:
                LOGGER.debug("Dropped malformed line: %s", exc)
                continue
            if message.command == "PING":
                await self._write(writer, OutboundMessage("PONG", message.params, message.trailing))
                continue
            if message.command == "ERROR":
                raise TransportError(f"server closed the session: {message.trailing or ''}")
            return message

    def _is_self(self, nick: Optional[str], session: Session) -> bool:
        return nick is not None and irc_lower(nick) == irc_lower(session.nickname)

    async def _on_message(
        self,
        writer: asyncio.StreamWriter,
        message: ParsedMessage,
        session: Session,
    ) -> None:
        if message.command == "NICK" and self._is_self(message.nick, session) and message.args:
            session.nickname = message.args[0]
        elif message.command == "JOIN" and self._is_self(message.nick, session) and message.args:
            session.joined.add(message.args[0])
        elif message.command == "INVITE" and len(message.args) >= 2:
            await self._on_invite(writer, message.args[1], session)
        elif message.command == "KICK" and len(message.params) >= 2 and self._is_self(message.params[1], session):
            LOGGER.warning("Kicked from %s by %s", message.params[0], message.nick)
            session.joined.discard(message.params[0])

        try:
            await self._sink.handle(message, session.nickname)
        except Exception:
            LOGGER.exception("Error while processing message")

    async def _on_invite(self, writer: asyncio.StreamWriter, channel: str, session: Session) -> None:
        if not self._config.join_on_invite or not is_channel_name(channel):
            return
        known = {irc_lower(name) for name in self._channels}
        if irc_lower(channel) not in known:
            self._channels.append(channel)
            session.channels.append(channel)
        LOGGER.info("Invited to %s, joining", channel)
        await self._write(writer, OutboundMessage("JOIN", (channel,)))

    async def _flush_outbound(self) -> None:
        """Give queued lines up to ``flush_timeout`` seconds to reach the server."""

        if not len(self._throttle):
            return
        try:
            await asyncio.wait_for(self._throttle.wait_empty(), timeout=self._flush_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("%s line(s) still throttled at shutdown", len(self._throttle))
            return
        # The last line taken may still be mid-write.
        async with self._write_lock:
            pass

    async def _drain_outbound(self, writer: asyncio.StreamWriter) -> None:
        while True:
            message = await self._throttle.get()
            try:
                await self._write(writer, message)
            except (TransportError, asyncio.CancelledError):
                self._throttle.requeue(message)
                raise

    async def _write(self, writer: asyncio.StreamWriter, message: OutboundMessage) -> None:
        data = encode(message)
        async with self._write_lock:
            try:
                writer.write(data)
                await writer.drain()
            except (OSError, RuntimeError) as exc:
                raise TransportError(f"write failed: {exc!r}") from exc
        LOGGER.debug(">> %s", message.command)

    async def _send_quit(self, writer: asyncio.StreamWriter) -> None:
        try:
            await asyncio.wait_for(
                self._write(writer, OutboundMessage("QUIT", (), QUIT_MESSAGE)),
                timeout=QUIT_TIMEOUT,
            )
        except (TransportError, asyncio.TimeoutError):
            LOGGER.debug("QUIT not delivered")

    async def _close(self, writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, RuntimeError):
            LOGGER.debug("Transport closed with error", exc_info=True)
