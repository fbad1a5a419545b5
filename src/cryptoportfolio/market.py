# market.py
"""
Market data from the public CoinGecko API.

MarketDataService keeps:
- a single-slot cache (last answer + when it was fetched) valid for `ttl` seconds;
- a rate-limit flag: after an HTTP 429 every call fails fast for `backoff`
  seconds without touching the network.

When a fetch fails for any other reason the last cached answer is returned
(stale but better than nothing); only when nothing is cached does the error
reach the caller.

One service instance is meant to be shared by everything in a process (the API
holds it on app.state); the cache and the rate-limit flag live on the instance.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from .config import settings

logger = logging.getLogger(__name__)

Prices = Dict[str, Dict[str, float]]


class MarketDataError(Exception):
    """Price data could not be fetched or decoded."""


class RateLimitedError(MarketDataError):
    """CoinGecko answered 429; calls are refused until the backoff window ends."""


@dataclass
class PriceTick:
    """
    What subscribers receive.

    prices: id -> {"usd": ..., "usd_24h_change": ...}; None when `error` is set.
    fresh: True for data straight from the API, False for simulated updates.
    """

    prices: Optional[Prices] = None
    error: Optional[Exception] = None
    fresh: bool = True


def _ids_param(ids: Iterable[str]) -> str:
    return ",".join(ids)


class MarketDataService:
    def __init__(
        self,
        base_url: str | None = None,
        session: requests.Session | None = None,
        ttl: float | None = None,
        backoff: float | None = None,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = (base_url or settings.coingecko_base_url).rstrip("/")
        self.session = session or requests.Session()
        self.ttl = settings.price_ttl_seconds if ttl is None else ttl
        self.backoff = settings.rate_limit_backoff_seconds if backoff is None else backoff
        self.timeout = settings.http_timeout_seconds if timeout is None else timeout
        self._clock = clock

        self._lock = threading.Lock()
        self._cache_ids: tuple[str, ...] | None = None
        self._cache_data: Prices | None = None
        self._cache_ts: float | None = None
        self._rate_limited = False
        self._backoff_until = 0.0

    # ---------- HTTP ----------

    def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        try:
            resp = self.session.get(
                f"{self.base_url}{path}",
                params=params,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise MarketDataError(f"Network error: {e}") from e

        if resp.status_code == 429:
            raise RateLimitedError("HTTP error! status: 429")
        if not resp.ok:
            raise MarketDataError(f"HTTP error! status: {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise MarketDataError("Invalid JSON from market data API") from e

    # ---------- Cached prices ----------

    def is_rate_limited(self) -> bool:
        return self._rate_limited and self._clock() < self._backoff_until

    def clear_cache(self) -> None:
        with self._lock:
            self._cache_ids = self._cache_data = self._cache_ts = None

    def get_prices(self, ids: Iterable[str]) -> Prices:
        """
        {id: {"usd": price, "usd_24h_change": pct}} for the requested coin ids.

        Raises RateLimitedError during a backoff window and MarketDataError when
        the fetch fails with nothing cached.
        """
        ids = tuple(ids)
        if self.is_rate_limited():
            raise RateLimitedError("Rate limited. Please wait before retrying.")

        now = self._clock()
        with self._lock:
            if (
                self._cache_data is not None
                and self._cache_ids == ids
                and now - self._cache_ts < self.ttl
            ):
                return self._cache_data

        try:
            data = self._get_json(
                "/simple/price",
                {"ids": _ids_param(ids), "vs_currencies": "usd", "include_24hr_change": "true"},
            )
        except RateLimitedError:
            self._rate_limited = True
            self._backoff_until = self._clock() + self.backoff
            logger.warning("Market data rate limited; backing off for %ss", self.backoff)
            raise RateLimitedError(f"Rate limit exceeded. Backing off for {self.backoff:g} seconds.")
        except MarketDataError as e:
            with self._lock:
                cached = self._cache_data
            if cached is not None:
                logger.warning("Using cached data due to API error: %s", e)
                return cached
            raise

        with self._lock:
            self._cache_ids = ids
            self._cache_data = data
            self._cache_ts = now
        self._rate_limited = False
        self._backoff_until = 0.0
        return data

    # ---------- Uncached calls ----------

    def fetch_fresh(self, ids: Iterable[str]) -> Prices:
        """Straight to the API, also asking for market cap and volume."""
        return self._get_json(
            "/simple/price",
            {
                "ids": _ids_param(ids),
                "vs_currencies": "usd",
                "include_24hr_change": "true",
                "include_market_cap": "true",
                "include_24hr_vol": "true",
            },
        )

    def get_market_data_with_sparklines(self, ids: Iterable[str], per_page: int = 10) -> List[Dict[str, Any]]:
        """/coins/markets rows, each with a 7-day `sparkline_in_7d.price` series."""
        try:
            return self._get_json(
                "/coins/markets",
                {
                    "vs_currency": "usd",
                    "ids": _ids_param(ids),
                    "order": "market_cap_desc",
                    "per_page": per_page,
                    "page": 1,
                    "sparkline": "true",
                    "price_change_percentage": "24h",
                },
            )
        except MarketDataError:
            logger.exception("Error fetching market data with sparklines")
            raise

    # ---------- Polling ----------

    def subscribe_prices(
        self,
        ids: Iterable[str],
        callback: Callable[[PriceTick], None],
        interval: float = 30.0,
    ) -> Callable[[], None]:
        """
        Poll get_prices every `interval` seconds on a daemon thread, first poll
        right away. Returns a function that stops the polling; a poll already
        in flight when it is called is dropped.
        """
        ids = tuple(ids)
        stopped = threading.Event()

        def poll() -> None:
            while not stopped.is_set():
                try:
                    tick = PriceTick(prices=self.get_prices(ids))
                except MarketDataError as e:
                    tick = PriceTick(error=e)
                if stopped.is_set():
                    break
                try:
                    callback(tick)
                except Exception:
                    logger.exception("Price subscriber failed")
                stopped.wait(interval)

        threading.Thread(target=poll, name="price-poll", daemon=True).start()
        return stopped.set
