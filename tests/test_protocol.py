from __future__ import annotations

import pytest

from core.errors import MalformedLine
from core.models import OutboundMessage
from core.protocol import (
    MAX_LINE_BYTES,
    decode,
    encode,
    format_line,
    irc_lower,
    privmsg_lines,
    split_text,
)


def test_decode_privmsg_with_prefix_and_trailing() -> None:
    message = decode(":alice!a@example.org PRIVMSG #rust :hello there\r\n")
    assert message.prefix == "alice!a@example.org"
    assert message.nick == "alice"
    assert message.command == "PRIVMSG"
    assert message.params == ("#rust",)
    assert message.trailing == "hello there"


def test_decode_without_trailing_and_lowercase_command() -> None:
    message = decode(b"join #rust\r\n")
    assert message.command == "JOIN"
    assert message.params == ("#rust",)
    assert message.trailing is None
    assert message.args == ("#rust",)


def test_decode_ping_with_only_trailing() -> None:
    message = decode("PING :irc.example.org")
    assert message.command == "PING"
    assert message.params == ()
    assert message.trailing == "irc.example.org"


def test_decode_tags_are_parsed_and_not_counted() -> None:
    tags = "time=2024-01-01T00:00:00.000Z;msgid=abc\\sdef"
    message = decode(f"@{tags} :bob PRIVMSG #c :hi")
    assert message.tags == {"time": "2024-01-01T00:00:00.000Z", "msgid": "abc def"}
    assert message.nick == "bob"


def test_decode_rejects_missing_command() -> None:
    with pytest.raises(MalformedLine):
        decode(":alice!a@host")
    with pytest.raises(MalformedLine):
        decode("   ")


def test_decode_rejects_overlong_line() -> None:
    line = "PRIVMSG #c :" + "x" * MAX_LINE_BYTES
    with pytest.raises(MalformedLine):
        decode(line)


@pytest.mark.parametrize(
    "line",
    [
        ":alice!a@example.org PRIVMSG #rust :hello there",
        "JOIN #rust",
        "PING :irc.example.org",
        ":srv 001 boot :Welcome to the network",
        "MODE #rust +o alice",
        "PRIVMSG bob ::-)",
    ],
)
def test_decode_then_encode_roundtrip(line: str) -> None:
    assert encode(decode(line)) == line.encode("utf-8") + b"\r\n"


def test_format_line_moves_spaced_last_param_to_trailing() -> None:
    line = format_line(OutboundMessage("USER", ("boot", "0", "*", "boot bot")))
    assert line == "USER boot 0 * :boot bot"


def test_encode_strips_newlines_and_truncates() -> None:
    data = encode(OutboundMessage("PRIVMSG", ("#c",), "one\r\nQUIT :two"))
    assert data == b"PRIVMSG #c :one  QUIT :two\r\n"

    long = encode(OutboundMessage("PRIVMSG", ("#c",), "é" * 600))
    assert len(long) <= MAX_LINE_BYTES
    assert long.endswith(b"\r\n")
    long.decode("utf-8")


def test_split_text_prefers_whitespace() -> None:
    chunks = split_text("alpha beta gamma delta", 11)
    assert chunks == ["alpha beta", "gamma delta"]


def test_split_text_breaks_long_words_on_character_boundaries() -> None:
    chunks = split_text("ééééé", 4)
    assert chunks == ["éé", "éé", "é"]
    assert all(len(chunk.encode("utf-8")) <= 4 for chunk in chunks)


def test_privmsg_lines_fit_the_limit() -> None:
    text = " ".join(["word"] * 300)
    messages = privmsg_lines("#rust", text)
    assert len(messages) > 1
    for message in messages:
        assert len(encode(message)) <= MAX_LINE_BYTES
    assert " ".join(message.trailing for message in messages) == text


def test_irc_lower_uses_rfc1459_casemapping() -> None:
    assert irc_lower("Nick[A]\\~") == "nick{a}|^"
