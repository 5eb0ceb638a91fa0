"""Asynchronous helpers for interacting with HTTP APIs.

Every outbound request goes through :func:`api_request`, which applies a
per-host rate limit and turns transport failures into
:class:`~solpulsebot.errors.UpstreamUnavailable`. The price oracle used by the
alert monitor and the ``/price`` command lives here as well, next to the
cached token directory that turns mints into symbols.
"""

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

import aiohttp
from aiolimiter import AsyncLimiter

from . import config
from .errors import InvalidResponse, SwapBotError, UpstreamUnavailable

LIMITERS: Dict[str, AsyncLimiter] = {}
REQUESTS_PER_MINUTE = 120
MAX_RETRY_WAIT = 30


def limiter_for(url: str) -> AsyncLimiter:
    """Return the shared rate limiter for the host of ``url``."""
    host = urlsplit(url).netloc
    if host not in LIMITERS:
        LIMITERS[host] = AsyncLimiter(REQUESTS_PER_MINUTE, 60)
    return LIMITERS[host]


def redact(url: str) -> str:
    """Strip the query string, which may carry RPC API keys, for logging."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


def retry_delay(retry_after: Optional[str], attempt: int) -> float:
    """Seconds to wait before retrying a throttled request.

    ``Retry-After`` may hold delta-seconds or an HTTP-date. Anything that
    does not parse falls back to exponential backoff.
    """
    fallback = float(2**attempt)
    if not retry_after:
        return fallback
    try:
        wait = float(retry_after)
    except ValueError:
        try:
            when = parsedate_to_datetime(retry_after)
        except (TypeError, ValueError):
            return fallback
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        wait = (when - datetime.now(timezone.utc)).total_seconds()
    if not math.isfinite(wait):
        return fallback
    return min(max(wait, 0.0), MAX_RETRY_WAIT)


async def api_request(
    method: str,
    url: str,
    *,
    session: Optional[aiohttp.ClientSession] = None,
    params: Optional[dict] = None,
    json: Optional[Any] = None,
    headers: Optional[dict] = None,
    retries: int = 1,
    user: Optional[int] = None,
) -> Tuple[int, Any]:
    """Perform an HTTP request and return ``(status, decoded_json)``.

    Parameters
    ----------
    method:
        HTTP method.
    url:
        Endpoint to request.
    session:
        Existing ``ClientSession`` to use. If omitted a new one is created.
    params, json, headers:
        Passed through to ``aiohttp``.
    retries:
        Attempts made while the server answers 429. The default of one
        means the caller owns any retry policy.
    user:
        User ID used for logging purposes.

    Returns
    -------
    Tuple[int, Any]
        The status code and the JSON body, or ``None`` when the body is not
        JSON.

    Raises
    ------
    UpstreamUnavailable
        When the request fails at the transport level.
    """
    owns_session = session is None
    if owns_session:
        session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=config.HTTP_TIMEOUT)
        )
    limiter = limiter_for(url)
    status = 0
    data: Any = None
    try:
        for attempt in range(retries):
            async with limiter:
                async with session.request(
                    method, url, params=params, json=json, headers=headers
                ) as resp:
                    status = resp.status
                    retry_after = resp.headers.get("Retry-After")
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError:
                        data = None
            config.logger.info(
                "api_request user=%s method=%s url=%s status=%s",
                user,
                method,
                redact(url),
                status,
            )
            if status != 429 or attempt == retries - 1:
                break
            await asyncio.sleep(retry_delay(retry_after, attempt))
        return status, data
    except asyncio.TimeoutError as exc:
        config.logger.error("api request timed out: %s", redact(url))
        raise UpstreamUnavailable(
            f"{urlsplit(url).netloc} timed out", ambiguous=True
        ) from exc
    except aiohttp.ServerDisconnectedError as exc:
        config.logger.error("api request disconnected: %s", redact(url))
        raise UpstreamUnavailable(
            f"{urlsplit(url).netloc} closed the connection", ambiguous=True
        ) from exc
    except aiohttp.ClientError as exc:
        config.logger.error("api request failed: %s", exc)
        raise UpstreamUnavailable(f"{urlsplit(url).netloc} unreachable") from exc
    finally:
        if owns_session:
            await session.close()


def check_status(status: int, service: str) -> None:
    """Raise :class:`UpstreamUnavailable` for throttling and server errors."""
    if status == 429:
        raise UpstreamUnavailable(f"{service} is rate limiting requests")
    if status >= 500:
        raise UpstreamUnavailable(f"{service} returned HTTP {status}", ambiguous=True)


def _parse_price(entry: Any) -> Optional[float]:
    if not isinstance(entry, dict):
        return None
    value = entry.get("price")
    if value is None:
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if math.isfinite(price) and price > 0 else None


def chunks(items: List[str], size: int) -> List[List[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]  # noqa: E203


class PriceOracle:
    """USD prices for token mints from the Jupiter price API."""

    batch_size = 100

    def __init__(
        self,
        url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.url = url or config.JUPITER_PRICE_URL
        self.session = session

    async def get_prices(
        self, assets: Iterable[str], *, user: Optional[int] = None
    ) -> Dict[str, float]:
        """Fetch prices for ``assets``; assets without a price are absent.

        Duplicate assets are requested once. Any failed batch raises, so
        callers that can tolerate partial data should pass one batch at a
        time.
        """
        unique = list(dict.fromkeys(assets))
        prices: Dict[str, float] = {}
        for group in chunks(unique, self.batch_size):
            status, data = await api_request(
                "GET",
                self.url,
                session=self.session,
                params={"ids": ",".join(group)},
                retries=3,
                user=user,
            )
            check_status(status, "price oracle")
            if status != 200 or not isinstance(data, dict):
                raise InvalidResponse("Price oracle returned an unexpected payload")
            entries = data.get("data")
            if not isinstance(entries, dict):
                raise InvalidResponse("Price oracle response has no data")
            for asset in group:
                price = _parse_price(entries.get(asset))
                if price is not None:
                    prices[asset] = price
        return prices

    async def get_price(
        self, asset: str, *, user: Optional[int] = None
    ) -> Optional[float]:
        """Return the current USD price for ``asset`` or ``None``."""
        prices = await self.get_prices([asset], user=user)
        return prices.get(asset)


@dataclass(frozen=True)
class TokenInfo:
    address: str
    symbol: str
    name: str
    decimals: Optional[int] = None

    @property
    def label(self) -> str:
        return self.symbol or config.short_address(self.address)


def _parse_token(mint: str, data: Any) -> Optional[TokenInfo]:
    if not isinstance(data, dict) or data.get("address", mint) != mint:
        return None
    decimals = data.get("decimals")
    return TokenInfo(
        address=mint,
        symbol=str(data.get("symbol") or ""),
        name=str(data.get("name") or ""),
        decimals=decimals if isinstance(decimals, int) else None,
    )


class TokenDirectory:
    """Token symbols and names from the Jupiter token API, cached per mint.

    Only known tokens are cached, so a token listed after its first lookup
    is picked up on the next one.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.url = (url or config.JUPITER_TOKEN_URL).rstrip("/")
        self.session = session
        self._cache: Dict[str, TokenInfo] = {}

    async def get_token(
        self, mint: str, *, user: Optional[int] = None
    ) -> Optional[TokenInfo]:
        """Return metadata for ``mint`` or ``None`` for unknown tokens."""
        if mint in self._cache:
            return self._cache[mint]
        status, data = await api_request(
            "GET", f"{self.url}/{mint}", session=self.session, user=user
        )
        check_status(status, "token list")
        if status == 404 or (status == 200 and data is None):
            return None
        if status != 200:
            raise InvalidResponse(f"Token list returned HTTP {status}")
        info = _parse_token(mint, data)
        if info is None:
            raise InvalidResponse("Token list returned an unexpected payload")
        self._cache[mint] = info
        return info

    async def label(self, mint: str, *, user: Optional[int] = None) -> str:
        """Return the token symbol, or the shortened mint when it is unknown."""
        try:
            info = await self.get_token(mint, user=user)
        except SwapBotError as exc:
            config.logger.warning("token lookup failed for %s: %s", mint, exc)
            info = None
        if info is None:
            return config.short_address(mint)
        return info.label
