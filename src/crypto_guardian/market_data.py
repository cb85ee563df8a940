from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import urlencode

import httpx

from .cache import TTLCache
from .errors import MarketDataUnavailable
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.coingecko.com/api/v3"

_RETRYABLE_TRANSPORT_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


def is_retryable_market_error(exc: BaseException) -> bool:
    if isinstance(exc, MarketDataUnavailable):
        return exc.retryable
    return isinstance(exc, _RETRYABLE_TRANSPORT_ERRORS)


def normalize_coin_ids(coin_ids: Iterable[str]) -> list[str]:
    return sorted({str(c).strip().lower() for c in coin_ids if c and str(c).strip()})


def cache_key(path: str, params: dict[str, Any]) -> str:
    query = urlencode(sorted((str(k), str(v)) for k, v in params.items()))
    return f"{path}?{query}"


class CoinGeckoClient:
    """Cached, rate-limit tolerant reader for the CoinGecko public API.

    One instance is shared by everything in the process that needs prices,
    so the cache and the in-flight map are per instance rather than module
    globals.
    """

    def __init__(
        self,
        api_base: str = DEFAULT_API_BASE,
        api_key: str | None = None,
        timeout: float = 8.0,
        cache_ttl_seconds: float = 60.0,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        cache: TTLCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.cache = cache if cache is not None else TTLCache(cache_ttl_seconds)
        self.retry_policy = RetryPolicy(
            max_attempts=max_attempts,
            base_delay=base_delay,
            multiplier=2.0,
            retry_on=is_retryable_market_error,
            sleep=sleep,
        )
        headers = {"accept": "application/json"}
        if api_key:
            headers["x-cg-demo-api-key"] = api_key
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)
        self._inflight: dict[str, asyncio.Future[Any]] = {}

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_prices(self, coin_ids: Iterable[str], currency: str = "usd") -> dict[str, Decimal]:
        ids = normalize_coin_ids(coin_ids)
        if not ids:
            raise ValueError("fetch_prices needs at least one coin id")
        vs = currency.strip().lower()

        data = await self.get_json("/simple/price", {"ids": ",".join(ids), "vs_currencies": vs})
        if not isinstance(data, dict):
            raise MarketDataUnavailable("Unexpected /simple/price payload shape")

        prices: dict[str, Decimal] = {}
        for coin_id in ids:
            record = data.get(coin_id)
            if not isinstance(record, dict):
                continue
            price = _to_decimal(record.get(vs))
            if price is not None:
                prices[coin_id] = price
        return prices

    async def fetch_markets(self, currency: str = "usd", per_page: int = 50, page: int = 1) -> list[dict[str, Any]]:
        data = await self.get_json(
            "/coins/markets",
            {
                "vs_currency": currency.strip().lower(),
                "order": "market_cap_desc",
                "per_page": per_page,
                "page": page,
                "sparkline": "false",
            },
        )
        if not isinstance(data, list):
            raise MarketDataUnavailable("Unexpected /coins/markets payload shape")
        return [row for row in data if isinstance(row, dict)]

    async def fetch_trending(self) -> list[dict[str, Any]]:
        data = await self.get_json("/search/trending", {})
        if not isinstance(data, dict):
            raise MarketDataUnavailable("Unexpected /search/trending payload shape")
        coins = data.get("coins", [])
        out: list[dict[str, Any]] = []
        for entry in coins if isinstance(coins, list) else []:
            item = entry.get("item") if isinstance(entry, dict) else None
            if isinstance(item, dict):
                out.append(item)
        return out

    async def get_json(self, path: str, params: dict[str, Any]) -> Any:
        key = cache_key(path, params)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache hit %s", key)
            return cached

        # Concurrent misses for one key share a single upstream request.
        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch_and_store(key, path, params))
            self._inflight[key] = pending
            pending.add_done_callback(lambda fut: self._finish_inflight(key, fut))
        return await asyncio.shield(pending)

    def _finish_inflight(self, key: str, fut: asyncio.Future[Any]) -> None:
        self._inflight.pop(key, None)
        # Waiters may all have been cancelled; mark the outcome as retrieved.
        if not fut.cancelled() and fut.exception() is not None:
            logger.debug("Shared fetch for %s failed: %s", key, fut.exception())

    async def _fetch_and_store(self, key: str, path: str, params: dict[str, Any]) -> Any:
        attempts = self.retry_policy.max_attempts
        try:
            data = await self.retry_policy.run(lambda: self._request(path, params), name=f"GET {path}")
        except MarketDataUnavailable as exc:
            if exc.retryable:
                raise MarketDataUnavailable(
                    f"GET {path} failed after {attempts} attempts: {exc}",
                    status_code=exc.status_code,
                    retryable=True,
                ) from exc
            raise
        except _RETRYABLE_TRANSPORT_ERRORS as exc:
            raise MarketDataUnavailable(
                f"GET {path} failed after {attempts} attempts: {exc!r}", retryable=True
            ) from exc
        except httpx.HTTPError as exc:
            raise MarketDataUnavailable(f"GET {path} failed: {exc!r}") from exc

        self.cache.set(key, data)
        return data

    async def _request(self, path: str, params: dict[str, Any]) -> Any:
        response = await self._client.get(f"{self.api_base}{path}", params=params)

        if response.status_code == 429:
            raise MarketDataUnavailable("CoinGecko rate limited (HTTP 429)", status_code=429, retryable=True)
        if response.is_error:
            raise MarketDataUnavailable(
                f"CoinGecko returned HTTP {response.status_code} for {path}",
                status_code=response.status_code,
            )

        try:
            return json.loads(response.text, parse_float=Decimal)
        except ValueError as exc:
            raise MarketDataUnavailable(f"Malformed JSON from {path}") from exc


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return price if price.is_finite() else None
