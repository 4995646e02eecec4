from __future__ import annotations

import asyncio

import pytest

from adapters.http_providers import HttpStatusError, WeatherProvider, extract_title, format_price
from core.errors import HandlerError


def test_extract_title_collapses_whitespace() -> None:
    html_text = "<html><head><title>\n  Rust   Blog \n</title></head></html>"
    assert extract_title(html_text) == "Rust Blog"


def test_extract_title_prefers_og_title_for_generic_sites() -> None:
    html_text = (
        "<html><head><title>YouTube</title>"
        '<meta property="og:title" content="Never Gonna Give You Up">'
        "</head></html>"
    )
    assert extract_title(html_text) == "Never Gonna Give You Up"


def test_extract_title_falls_back_to_og_title_and_none() -> None:
    assert extract_title('<meta property="og:title" content="Only OG">') == "Only OG"
    assert extract_title("<p>no title</p>") is None


def test_format_price() -> None:
    line = format_price("bitcoin", {"usd": 43210.5, "usd_24h_change": -1.234}, "usd")
    assert line == "bitcoin: 43,210.50 USD (-1.23% 24h)"
    assert format_price("dogecoin", {"usd": 0.08}, "usd") == "dogecoin: 0.08 USD"


def test_format_price_without_quote() -> None:
    with pytest.raises(HandlerError):
        format_price("bitcoin", {"eur": 1.0}, "usd")


class StatusClient:
    def __init__(self, status: int) -> None:
        self.status = status
        self.urls: list[str] = []

    async def get_text(self, url: str, max_bytes: int = 0) -> str:
        self.urls.append(url)
        raise HttpStatusError(self.status)


def test_weather_unknown_location_hides_provider_url() -> None:
    client = StatusClient(404)
    provider = WeatherProvider(client, "https://wttr.example")

    with pytest.raises(HandlerError) as excinfo:
        asyncio.run(provider.fetch("atlantis"))

    assert excinfo.value.user_text == "weather: no results for atlantis"
    assert client.urls == ["https://wttr.example/atlantis?format=3"]


def test_weather_other_http_errors_stay_generic() -> None:
    with pytest.raises(HttpStatusError) as excinfo:
        asyncio.run(WeatherProvider(StatusClient(503)).fetch("paris"))

    assert excinfo.value.user_text == "provider answered HTTP 503"
