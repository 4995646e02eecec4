"""Line codec for the IRC wire format.

Framing rules:
- one message per CRLF-terminated line, at most 512 bytes including CRLF
- optional ``@tags`` and ``:prefix`` words, then a command token
- space separated middle parameters, an optional trailing parameter after
  the first `` :`` marker

The codec is stateless; callers decide what to do with decode failures.
"""

from __future__ import annotations

from typing import Iterator, List, Optional, Union

from core.errors import MalformedLine
from core.models import OutboundMessage, ParsedMessage

MAX_LINE_BYTES = 512
# Room left for the ":nick!user@host " prefix the server prepends when it
# relays our PRIVMSG to other clients.
RELAY_PREFIX_RESERVE = 100

_CASEMAP = str.maketrans("[]\\~", "{}|^")
_TAG_UNESCAPES = {":": ";", "s": " ", "\\": "\\", "r": "\r", "n": "\n"}


def irc_lower(name: str) -> str:
    """Lowercase a nickname or channel with rfc1459 casemapping."""

    return name.lower().translate(_CASEMAP)


def _unescape_tag(value: str) -> str:
    out: List[str] = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        out.append(_TAG_UNESCAPES.get(nxt, nxt))
    return "".join(out)


def _parse_tags(raw: str) -> dict[str, str]:
    tags: dict[str, str] = {}
    for item in raw.split(";"):
        if not item:
            continue
        key, _, value = item.partition("=")
        tags[key] = _unescape_tag(value)
    return tags


def decode(raw_line: Union[str, bytes]) -> ParsedMessage:
    """Decode one raw line into a ParsedMessage.

    Raises MalformedLine when the line is too long or has no command token.
    """

    if isinstance(raw_line, bytes):
        raw_bytes = raw_line
        line = raw_line.decode("utf-8", errors="replace")
    else:
        line = raw_line
        raw_bytes = raw_line.encode("utf-8")

    line = line.rstrip("\r\n")
    # Tags are limited separately by IRCv3 and do not count towards the limit.
    body_bytes = len(raw_bytes.rstrip(b"\r\n"))
    tags: dict[str, str] = {}
    if line.startswith("@"):
        raw_tags, _, line = line[1:].partition(" ")
        body_bytes -= len(raw_tags.encode("utf-8")) + 2
        tags = _parse_tags(raw_tags)
        line = line.lstrip(" ")

    if body_bytes + 2 > MAX_LINE_BYTES:
        raise MalformedLine(f"line exceeds {MAX_LINE_BYTES} bytes")

    prefix: Optional[str] = None
    if line.startswith(":"):
        prefix, _, line = line[1:].partition(" ")
        line = line.lstrip(" ")
        if not prefix:
            raise MalformedLine("empty prefix")

    trailing: Optional[str] = None
    if " :" in line:
        line, trailing = line.split(" :", 1)
    elif line.startswith(":"):
        line, trailing = "", line[1:]

    words = line.split()
    if not words:
        raise MalformedLine("missing command token")

    command = words[0].upper()
    return ParsedMessage(
        command=command,
        params=tuple(words[1:]),
        trailing=trailing,
        prefix=prefix,
        tags=tags,
    )


def _needs_trailing_marker(param: str) -> bool:
    return not param or " " in param or param.startswith(":")


def format_line(message: Union[OutboundMessage, ParsedMessage]) -> str:
    """Serialize a message without the CRLF terminator and without limits."""

    parts: List[str] = []
    prefix = getattr(message, "prefix", None)
    if prefix:
        parts.append(f":{prefix}")
    parts.append(message.command)
    params = list(message.params)
    trailing = message.trailing
    if trailing is None and params and _needs_trailing_marker(params[-1]):
        trailing = params.pop()
    parts.extend(params)
    if trailing is not None:
        parts.append(f":{trailing}")
    return " ".join(parts)


def _truncate_utf8(text: str, max_bytes: int) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def encode(message: Union[OutboundMessage, ParsedMessage]) -> bytes:
    """Serialize a message into one wire line, CRLF included.

    Newlines inside parameters would inject extra commands, so they are
    replaced with spaces. Lines over the limit are truncated on a character
    boundary; use ``split_text`` beforehand to avoid losing content.
    """

    line = format_line(message).replace("\r", " ").replace("\n", " ")
    line = _truncate_utf8(line, MAX_LINE_BYTES - 2)
    return line.encode("utf-8") + b"\r\n"


def _hard_split(word: str, budget: int) -> Iterator[str]:
    while word:
        piece = _truncate_utf8(word, budget)
        if not piece:
            # A single character wider than the budget; emit it whole.
            piece = word[0]
        yield piece
        word = word[len(piece):]


def split_text(text: str, max_bytes: int) -> List[str]:
    """Split ``text`` into chunks of at most ``max_bytes`` UTF-8 bytes.

    Splits happen at whitespace when possible; words wider than the budget
    are broken on character boundaries.
    """

    if max_bytes <= 0:
        raise ValueError("max_bytes must be positive")

    chunks: List[str] = []
    current = ""
    for raw_line in text.splitlines() or [""]:
        for word in raw_line.split():
            candidate = f"{current} {word}" if current else word
            if len(candidate.encode("utf-8")) <= max_bytes:
                current = candidate
                continue
            if current:
                chunks.append(current)
                current = ""
            if len(word.encode("utf-8")) <= max_bytes:
                current = word
                continue
            pieces = list(_hard_split(word, max_bytes))
            chunks.extend(pieces[:-1])
            current = pieces[-1]
        if current:
            chunks.append(current)
            current = ""
    return chunks


def privmsg_lines(target: str, text: str, *, action: bool = False) -> List[OutboundMessage]:
    """Build PRIVMSG messages for ``text``, split to fit the line limit."""

    overhead = len(f"PRIVMSG {target} :".encode("utf-8")) + 2 + RELAY_PREFIX_RESERVE
    if action:
        overhead += len("\x01ACTION \x01")
    budget = MAX_LINE_BYTES - overhead
    messages: List[OutboundMessage] = []
    for chunk in split_text(text, budget):
        body = f"\x01ACTION {chunk}\x01" if action else chunk
        messages.append(OutboundMessage("PRIVMSG", (target,), body))
    return messages
