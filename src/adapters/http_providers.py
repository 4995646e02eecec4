"""HTTP data-provider adapters.

Each provider satisfies the core ProviderPort: ``fetch(query)`` returns one
formatted line or raises HandlerError with a user-facing reason. Timeouts are
enforced here per request and again by the router per handler call.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional
from urllib.parse import quote

import aiohttp
from bs4 import BeautifulSoup

from core.errors import HandlerError, ProviderTimeout

LOGGER = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 bootbot/1.3.0"
# Sites whose <title> is just the site name; og:title carries the real one.
GENERIC_TITLES = {"YouTube", "Pleroma"}


class HttpStatusError(HandlerError):
    """The provider answered with an HTTP error status."""

    def __init__(self, status: int) -> None:
        super().__init__(f"provider answered HTTP {status}")
        self.status = status


class HttpClient:
    """Owns one aiohttp session shared by every provider."""

    def __init__(self, timeout: float = 10.0, user_agent: str = USER_AGENT) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None

    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"User-Agent": self._user_agent},
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def get_text(self, url: str, max_bytes: int = 0) -> str:
        """GET ``url`` and return at most ``max_bytes`` of the body as text."""

        try:
            async with self.session().get(url, allow_redirects=True, max_redirects=10) as resp:
                if resp.status >= 400:
                    raise HttpStatusError(resp.status)
                if max_bytes > 0:
                    body = bytearray()
                    async for chunk in resp.content.iter_chunked(4096):
                        body.extend(chunk)
                        if len(body) >= max_bytes:
                            break
                    raw = bytes(body)
                else:
                    raw = await resp.read()
                charset = resp.charset or "utf-8"
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout(f"{url} took too long to answer") from exc
        except aiohttp.ClientError as exc:
            raise HandlerError(f"could not reach {url}") from exc
        try:
            return raw.decode(charset, errors="replace")
        except LookupError:
            return raw.decode("utf-8", errors="replace")

    async def get_json(self, url: str) -> object:
        try:
            async with self.session().get(url) as resp:
                if resp.status >= 400:
                    raise HttpStatusError(resp.status)
                return await resp.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout("provider took too long to answer") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise HandlerError("provider is unavailable") from exc


def extract_title(html_text: str) -> Optional[str]:
    """Return the page title, preferring og:title for generic site titles."""

    soup = BeautifulSoup(html_text, "html.parser")
    title = soup.title.get_text(" ", strip=True) if soup.title else None
    og_tag = soup.find("meta", attrs={"property": "og:title"})
    og_title = og_tag.get("content", "").strip() if og_tag else ""
    if title in GENERIC_TITLES or not title:
        title = og_title or title
    if not title:
        return None
    return " ".join(title.split())


class TitleFetcher:
    """Fetch the title of a web page, reading only the first few KB."""

    def __init__(self, client: HttpClient, max_kb: int = 256) -> None:
        self._client = client
        self._max_bytes = max_kb * 1024

    async def fetch(self, query: str) -> str:
        html_text = await self._client.get_text(query, self._max_bytes)
        title = extract_title(html_text)
        if not title:
            raise HandlerError(f"no title for {query}")
        return title


class WeatherProvider:
    """Current conditions from wttr.in's one-line format."""

    def __init__(self, client: HttpClient, base_url: str = "https://wttr.in") -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def fetch(self, query: str) -> str:
        url = f"{self._base_url}/{quote(query)}?format=3"
        try:
            text = (await self._client.get_text(url)).strip()
        except HttpStatusError as exc:
            # wttr.in answers unknown locations with a 404.
            if exc.status == 404:
                raise HandlerError(f"weather: no results for {query}") from exc
            raise
        if not text or "unknown location" in text.lower():
            raise HandlerError(f"weather: no results for {query}")
        return " ".join(text.split())


class PriceProvider:
    """Spot price and 24h change from the CoinGecko simple price API."""

    def __init__(
        self,
        client: HttpClient,
        base_url: str = "https://api.coingecko.com/api/v3",
        currency: str = "usd",
    ) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._currency = currency

    async def fetch(self, query: str) -> str:
        coin = query.strip().lower()
        url = (
            f"{self._base_url}/simple/price?ids={quote(coin)}"
            f"&vs_currencies={self._currency}&include_24hr_change=true"
        )
        data = await self._client.get_json(url)
        if not isinstance(data, dict) or coin not in data:
            raise HandlerError(f"price: unknown coin {query}")
        return format_price(coin, data[coin], self._currency)


def format_price(coin: str, quote_data: dict, currency: str) -> str:
    price = quote_data.get(currency)
    if price is None:
        raise HandlerError(f"price: no {currency.upper()} quote for {coin}")
    line = f"{coin}: {float(price):,.2f} {currency.upper()}"
    change = quote_data.get(f"{currency}_24h_change")
    if change is not None:
        line += f" ({float(change):+.2f}% 24h)"
    return line
