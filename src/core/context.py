"""Protocol-to-core mapping for chat lines.

This keeps wire details (CTCP framing, reply targets, nick addressing) out of
the router and the handlers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from core.models import ChatContext, ParsedMessage, is_channel_name
from core.protocol import irc_lower

_ACTION_PREFIX = "\x01ACTION "
_ADDRESS_SUFFIXES = ":,"


def _strip_action(text: str) -> tuple[str, bool]:
    if text.startswith(_ACTION_PREFIX):
        return text[len(_ACTION_PREFIX):].rstrip("\x01"), True
    return text, False


def _is_addressed_word(word: str, current_nick: str) -> bool:
    word = irc_lower(word).rstrip(_ADDRESS_SUFFIXES)
    return word == irc_lower(current_nick)


def build_context(message: ParsedMessage, current_nick: str, now: datetime) -> Optional[ChatContext]:
    """Build a ChatContext from a PRIVMSG, or None for anything else.

    A line is a command when its first word is the bot's nickname
    (``boot: seen bob``) or when it is a private message to the bot.
    """

    if message.command != "PRIVMSG" or not message.nick or not message.params:
        return None

    target = message.params[0]
    raw_text = message.trailing if message.trailing is not None else " ".join(message.params[1:])
    text, is_action = _strip_action(raw_text)
    if raw_text.startswith("\x01") and not is_action:
        # Other CTCP requests (VERSION, PING...) are not chat lines.
        return None

    nick = message.nick
    reply_to = target if is_channel_name(target) else nick

    words = text.split()
    addressed = False
    if not is_action and words and _is_addressed_word(words[0], current_nick):
        addressed = True
        words = words[1:]
    elif not is_action and not is_channel_name(target):
        addressed = True

    command: Optional[str] = None
    args: tuple[str, ...] = ()
    rest = ""
    if addressed and words:
        command = words[0].lower()
        args = tuple(words[1:])
        rest = " ".join(args)

    return ChatContext(
        nick=nick,
        identity=irc_lower(nick),
        target=target,
        reply_to=reply_to,
        text=text,
        date=now,
        is_action=is_action,
        addressed=addressed,
        command=command,
        args=args,
        rest=rest,
    )
