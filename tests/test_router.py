from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from core.config import RouterConfig, ThrottleConfig
from core.errors import HandlerError, StoreError
from core.handlers import SeenHandler, TellHandler, UrlTitleHandler
from core.models import ChatContext, Deferred, ImmediateText, Notification, SeenRecord
from core.protocol import decode, irc_lower
from core.router import STORE_UNAVAILABLE, CommandRouter, Route
from core.throttle import OutboundThrottle

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeStorage:
    def __init__(self) -> None:
        self.seen: dict[str, SeenRecord] = {}
        self.memos: list[Notification] = []
        self.locations: dict[str, str] = {}
        self.fail = False

    def record_seen(self, nickname, timestamp, snippet, channel) -> None:
        if self.fail:
            raise StoreError("disk full")
        self.seen[irc_lower(nickname)] = SeenRecord(irc_lower(nickname), nickname, timestamp, snippet, channel)

    def get_seen(self, nickname: str) -> Optional[SeenRecord]:
        if self.fail:
            raise StoreError("disk full")
        return self.seen.get(irc_lower(nickname))

    def enqueue_notification(self, notification: Notification) -> Notification:
        stored = Notification(
            id=len(self.memos) + 1,
            sender=notification.sender,
            recipient=irc_lower(notification.recipient),
            body=notification.body,
            created_at=notification.created_at,
        )
        self.memos.append(stored)
        return stored

    def drain_due_notifications(self, nickname: str, limit: int) -> List[Notification]:
        if self.fail:
            raise StoreError("disk full")
        due = [n for n in self.memos if n.recipient == irc_lower(nickname) and not n.delivered][:limit]
        for memo in due:
            self.memos[self.memos.index(memo)] = Notification(
                id=memo.id,
                sender=memo.sender,
                recipient=memo.recipient,
                body=memo.body,
                created_at=memo.created_at,
                delivered=True,
            )
        return due

    def requeue_notifications(self, ids) -> None:
        for index, memo in enumerate(self.memos):
            if memo.id in ids:
                self.memos[index] = Notification(
                    id=memo.id,
                    sender=memo.sender,
                    recipient=memo.recipient,
                    body=memo.body,
                    created_at=memo.created_at,
                )

    def set_location(self, nickname: str, location: str) -> None:
        self.locations[irc_lower(nickname)] = location

    def get_location(self, nickname: str) -> Optional[str]:
        return self.locations.get(irc_lower(nickname))


def _router(storage: FakeStorage, **config) -> tuple[CommandRouter, OutboundThrottle]:
    throttle = OutboundThrottle(ThrottleConfig(capacity=1000, period=1.0))
    router = CommandRouter(storage, throttle, RouterConfig(**config), clock=lambda: NOW)
    return router, throttle


def _drain(throttle: OutboundThrottle) -> list[tuple[str, str]]:
    sent = []
    while True:
        message = throttle.poll()
        if message is None:
            return sent
        sent.append((message.params[0], message.trailing))


def _privmsg(nick: str, target: str, text: str):
    return decode(f":{nick}!u@host PRIVMSG {target} :{text}")


def test_every_line_updates_seen_even_commands() -> None:
    storage = FakeStorage()
    router, _ = _router(storage)
    router.register(SeenHandler())

    asyncio.run(router.handle(_privmsg("Bob", "#rust", "boot: seen alice"), "boot"))
    asyncio.run(router.handle(_privmsg("carol", "#rust", "\x01ACTION waves\x01"), "boot"))

    assert storage.seen["bob"].snippet == "saying: boot: seen alice"
    assert storage.seen["bob"].channel == "#rust"
    assert storage.seen["carol"].snippet == "performing: waves"


def test_memos_delivered_in_order_when_recipient_speaks() -> None:
    storage = FakeStorage()
    router, throttle = _router(storage, per_turn_cap=10)
    router.register(TellHandler())

    async def scenario() -> None:
        await router.handle(_privmsg("bob", "#rust", "boot: tell alice hi"), "boot")
        await router.handle(_privmsg("bob", "#rust", "boot: tell alice lunch?"), "boot")
        assert _drain(throttle) == [
            ("#rust", "ok, I'll tell alice that"),
            ("#rust", "ok, I'll tell alice that"),
        ]
        await router.handle(_privmsg("Alice", "#rust", "morning"), "boot")

    asyncio.run(scenario())
    assert _drain(throttle) == [
        ("#rust", "Alice, message from bob: hi"),
        ("#rust", "Alice, message from bob: lunch?"),
    ]
    assert storage.drain_due_notifications("alice", 10) == []


def test_memos_not_delivered_before_recipient_speaks_and_capped_per_turn() -> None:
    storage = FakeStorage()
    router, throttle = _router(storage, per_turn_cap=2)
    for body in ("one", "two", "three"):
        storage.enqueue_notification(Notification("bob", "dave", body, NOW))

    asyncio.run(router.handle(_privmsg("erin", "#rust", "hello"), "boot"))
    assert _drain(throttle) == []

    asyncio.run(router.handle(_privmsg("dave", "#rust", "hey"), "boot"))
    assert [text for _, text in _drain(throttle)] == [
        "dave, message from bob: one",
        "dave, message from bob: two",
    ]
    asyncio.run(router.handle(_privmsg("dave", "#rust", "again"), "boot"))
    assert [text for _, text in _drain(throttle)] == ["dave, message from bob: three"]


def test_seen_unknown_nick_is_not_an_error() -> None:
    storage = FakeStorage()
    router, throttle = _router(storage)
    router.register(SeenHandler())

    asyncio.run(router.handle(_privmsg("alice", "#rust", "boot: seen bob"), "boot"))
    assert _drain(throttle) == [("#rust", "bob has not previously been seen")]


def test_seen_known_nick_reports_elapsed_time() -> None:
    storage = FakeStorage()
    storage.record_seen("bob", NOW - timedelta(hours=3), "saying: bye", "#rust")
    router, throttle = _router(storage)
    router.register(SeenHandler())

    asyncio.run(router.handle(_privmsg("alice", "#python", "boot, seen BOB"), "boot"))
    assert _drain(throttle) == [("#python", "bob was last seen 3 hours ago in #rust saying: bye")]


def test_private_messages_reply_to_sender_without_address() -> None:
    storage = FakeStorage()
    router, throttle = _router(storage)
    router.register(SeenHandler())

    asyncio.run(router.handle(_privmsg("alice", "boot", "seen"), "boot"))
    assert _drain(throttle) == [("alice", "Hint: seen <nick>")]
    assert storage.seen["alice"].channel is None


def test_first_registered_route_wins() -> None:
    storage = FakeStorage()
    router, throttle = _router(storage)
    router.add_route(Route("first", lambda c: c.command == "ping", lambda c, s: ImmediateText(("first",))))
    router.add_route(Route("second", lambda c: c.command == "ping", lambda c, s: ImmediateText(("second",))))

    asyncio.run(router.handle(_privmsg("alice", "#rust", "boot: ping"), "boot"))
    assert _drain(throttle) == [("#rust", "first")]


def test_own_lines_and_ignored_nicks_are_skipped() -> None:
    storage = FakeStorage()
    router, throttle = _router(storage, ignored_nicks=frozenset({"OtherBot"}))
    router.register(SeenHandler())

    asyncio.run(router.handle(_privmsg("boot", "#rust", "boot: seen x"), "boot"))
    asyncio.run(router.handle(_privmsg("otherbot", "#rust", "boot: seen x"), "boot"))
    assert storage.seen == {}
    assert _drain(throttle) == []


def test_kick_updates_seen_for_kicked_user() -> None:
    storage = FakeStorage()
    router, _ = _router(storage)

    asyncio.run(router.handle(decode(":op!u@h KICK #rust mallory :spam"), "boot"))
    record = storage.seen["mallory"]
    assert record.snippet == "being kicked from #rust"
    assert record.channel == "#rust"


def test_handler_failures_become_one_error_line() -> None:
    storage = FakeStorage()
    router, throttle = _router(storage)

    def explode(context: ChatContext, store) -> ImmediateText:
        raise RuntimeError("boom")

    def refuse(context: ChatContext, store) -> ImmediateText:
        raise HandlerError("weather: no results for atlantis")

    router.add_route(Route("explode", lambda c: c.command == "explode", explode))
    router.add_route(Route("refuse", lambda c: c.command == "refuse", refuse))

    asyncio.run(router.handle(_privmsg("alice", "#rust", "boot: explode"), "boot"))
    asyncio.run(router.handle(_privmsg("alice", "#rust", "boot: refuse"), "boot"))
    assert _drain(throttle) == [
        ("#rust", "explode: something went wrong"),
        ("#rust", "weather: no results for atlantis"),
    ]


def test_store_failure_is_not_fatal() -> None:
    storage = FakeStorage()
    router, throttle = _router(storage)
    router.register(SeenHandler())
    storage.fail = True

    asyncio.run(router.handle(_privmsg("alice", "#rust", "boot: seen bob"), "boot"))
    assert _drain(throttle) == [("#rust", STORE_UNAVAILABLE)]


def test_deferred_handlers_run_concurrently_and_time_out() -> None:
    storage = FakeStorage()
    router, throttle = _router(storage, handler_timeout=0.2)
    release = asyncio.Event

    async def scenario() -> list[tuple[str, str]]:
        gate = release()

        async def slow() -> list[str]:
            await gate.wait()
            return ["slow done"]

        async def fast() -> list[str]:
            return ["fast done"]

        async def stuck() -> list[str]:
            await asyncio.sleep(10)
            return ["never"]

        router.add_route(Route("slow", lambda c: c.command == "slow", lambda c, s: Deferred(slow)))
        router.add_route(Route("fast", lambda c: c.command == "fast", lambda c, s: Deferred(fast)))
        router.add_route(Route("stuck", lambda c: c.command == "stuck", lambda c, s: Deferred(stuck)))

        await router.handle(_privmsg("a", "#rust", "boot: slow"), "boot")
        await router.handle(_privmsg("a", "#rust", "boot: fast"), "boot")
        await router.handle(_privmsg("a", "#rust", "boot: stuck"), "boot")
        assert router.in_flight == 3
        await asyncio.sleep(0.05)
        gate.set()
        await asyncio.sleep(0.35)
        assert router.in_flight == 0
        return _drain(throttle)

    assert asyncio.run(scenario()) == [
        ("#rust", "fast done"),
        ("#rust", "slow done"),
        ("#rust", "stuck: timed out"),
    ]


def test_shutdown_cancels_handlers_after_grace() -> None:
    storage = FakeStorage()
    router, throttle = _router(storage, handler_timeout=30)

    async def scenario() -> int:
        async def forever() -> list[str]:
            await asyncio.sleep(30)
            return ["late"]

        router.add_route(Route("wait", lambda c: c.command == "wait", lambda c, s: Deferred(forever)))
        await router.handle(_privmsg("a", "#rust", "boot: wait"), "boot")
        await router.shutdown(grace=0.05)
        await asyncio.sleep(0)
        return router.in_flight

    assert asyncio.run(scenario()) == 0
    assert _drain(throttle) == []


class TitleFetcher:
    def __init__(self, titles: dict[str, str], delay: float) -> None:
        self.titles = titles
        self.delay = delay

    async def fetch(self, query: str) -> str:
        if query not in self.titles:
            await asyncio.sleep(self.delay)
        return self.titles.get(query, "too late")


def test_slow_link_previews_are_skipped_silently() -> None:
    storage = FakeStorage()
    router, throttle = _router(storage, handler_timeout=1.0)
    fetcher = TitleFetcher({"https://fast.example/": "Fast Page"}, delay=5.0)
    router.register(UrlTitleHandler(fetcher, fetch_timeout=0.05))

    async def scenario() -> None:
        await router.handle(_privmsg("a", "#rust", "look https://slow.example/"), "boot")
        await router.handle(
            _privmsg("a", "#rust", "https://slow.example/ vs https://fast.example/"), "boot"
        )
        await asyncio.sleep(0.3)
        assert router.in_flight == 0

    asyncio.run(scenario())
    assert _drain(throttle) == [("#rust", "↪ Fast Page")]


def test_unsent_memo_lines_return_memos_to_the_queue() -> None:
    storage = FakeStorage()
    router, throttle = _router(storage, per_turn_cap=10)
    router.register(TellHandler())

    async def scenario() -> None:
        await router.handle(_privmsg("bob", "#rust", "boot: tell alice hi"), "boot")
        await router.handle(_privmsg("bob", "#rust", "boot: tell alice lunch?"), "boot")
        _drain(throttle)
        await router.handle(_privmsg("alice", "#rust", "morning"), "boot")

    asyncio.run(scenario())
    first = throttle.poll()
    assert first.trailing == "alice, message from bob: hi"
    unsent = throttle.clear()
    assert [line.trailing for line in unsent] == ["alice, message from bob: lunch?"]

    router.release_unsent(unsent)
    assert [memo.body for memo in storage.drain_due_notifications("alice", 10)] == ["lunch?"]
