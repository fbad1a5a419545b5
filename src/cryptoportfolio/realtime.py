# realtime.py
"""
SIMULATED real-time prices for a livelier UI.

This is not exchange streaming. Two timers run side by side:

- slow timer (default 30 s): fetches real prices and publishes them (fresh=True);
- fast timer (default 5 s): nudges the last known prices by a random +/-0.5%
  and publishes the result (fresh=False).

A real fetch overwrites whatever the fast timer has drifted to. There is no
ordering between the two timers: whichever publishes last wins. Every update
replaces the whole price dict, nothing is merged.
"""

from __future__ import annotations

import copy
import logging
import random
import threading
from typing import Callable, Iterable, List, Optional

from .market import MarketDataError, PriceTick, Prices

logger = logging.getLogger(__name__)

FAST_UPDATE_INTERVAL = 5.0
REGULAR_UPDATE_INTERVAL = 30.0
PRICE_JITTER = 0.005  # +/-0.5%
CHANGE_JITTER = 0.05  # +/-0.05 percentage points on the 24h change

Subscriber = Callable[[PriceTick], None]


def simulate_tick(prices: Prices, rng: random.Random, jitter: float = PRICE_JITTER) -> Prices:
    """Return a jittered copy of `prices`; the input is left untouched."""
    updated = copy.deepcopy(prices)
    for coin in updated.values():
        if not coin or not coin.get("usd"):
            continue
        coin["usd"] = coin["usd"] * (1 + rng.uniform(-jitter, jitter))
        if coin.get("usd_24h_change") is not None:
            coin["usd_24h_change"] = coin["usd_24h_change"] + rng.uniform(-CHANGE_JITTER, CHANGE_JITTER)
    return updated


class RealtimeMarketFeed:
    """
    fetch: callable(ids) -> prices, usually MarketDataService.fetch_fresh.
    """

    def __init__(
        self,
        fetch: Callable[[Iterable[str]], Prices],
        fast_interval: float = FAST_UPDATE_INTERVAL,
        slow_interval: float = REGULAR_UPDATE_INTERVAL,
        jitter: float = PRICE_JITTER,
        rng: Optional[random.Random] = None,
    ):
        self._fetch = fetch
        self.fast_interval = fast_interval
        self.slow_interval = slow_interval
        self.jitter = jitter
        self._rng = rng or random.Random()

        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []
        self._data: Optional[Prices] = None
        self._simulated: Optional[Prices] = None
        self._ids: tuple[str, ...] = ()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # ---------- lifecycle ----------

    def start(self, ids: Iterable[str]) -> None:
        """(Re)start both timers for `ids`. The first real fetch happens immediately."""
        self._halt_timers()
        self._ids = tuple(ids)
        self._stop = threading.Event()
        stop = self._stop
        self._threads = [
            threading.Thread(target=self._run, args=(stop, self.refresh, self.slow_interval, True),
                             name="realtime-slow", daemon=True),
            threading.Thread(target=self._run, args=(stop, self.fast_tick, self.fast_interval, False),
                             name="realtime-fast", daemon=True),
        ]
        for t in self._threads:
            t.start()
        logger.info("Real-time price simulation started for %s", ",".join(self._ids))

    def stop(self) -> None:
        """Stop both timers and forget subscribers and data."""
        self._halt_timers()
        with self._lock:
            self._subscribers = []
            self._data = None
            self._simulated = None

    def is_active(self) -> bool:
        return any(t.is_alive() for t in self._threads) and not self._stop.is_set()

    def current_data(self) -> Optional[Prices]:
        """Last real prices, or None before the first successful fetch."""
        with self._lock:
            return self._data

    def _halt_timers(self) -> None:
        self._stop.set()
        current = threading.current_thread()
        for t in self._threads:
            if t is not current:
                t.join(timeout=1.0)
        self._threads = []

    @staticmethod
    def _run(stop: threading.Event, tick: Callable[[], None], interval: float, immediate: bool) -> None:
        if not immediate and stop.wait(interval):
            return
        while not stop.is_set():
            tick()
            if stop.wait(interval):
                return

    # ---------- ticks ----------

    def refresh(self) -> None:
        """Slow timer: real fetch, overwrites the simulated state."""
        stop = self._stop
        try:
            fresh = self._fetch(self._ids)
        except MarketDataError as e:
            logger.error("Error in regular price update: %s", e)
            if not stop.is_set():
                self._publish(PriceTick(error=e, fresh=True))
            return
        if stop.is_set():
            # stopped while the request was in flight
            return
        with self._lock:
            self._data = fresh
            self._simulated = fresh
        self._publish(PriceTick(prices=fresh, fresh=True))

    def fast_tick(self) -> None:
        """Fast timer: jitter the last prices, publish as not fresh."""
        with self._lock:
            base = self._simulated
        if base is None:
            return
        simulated = simulate_tick(base, self._rng, self.jitter)
        with self._lock:
            self._simulated = simulated
        self._publish(PriceTick(prices=simulated, fresh=False))

    # ---------- subscribers ----------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register `callback`; it gets the current real prices right away when
        there are any. Returns the matching unsubscribe function.
        """
        with self._lock:
            self._subscribers.append(callback)
            current = self._data
        if current is not None:
            self._deliver(callback, PriceTick(prices=current, fresh=True))

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, tick: PriceTick) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            self._deliver(callback, tick)

    @staticmethod
    def _deliver(callback: Subscriber, tick: PriceTick) -> None:
        try:
            callback(tick)
        except Exception:
            logger.exception("Error notifying subscriber")
