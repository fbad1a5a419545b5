# portfolio.py
"""
Holdings (what the user says they own) and the numbers shown on the dashboard.

Holdings live client-side under `crypto_holdings` as a JSON map
coin id -> amount; the server never validates them.

compute_portfolio_summary() is pure: holdings + prices in, summary out.
The 24h profit is reconstructed from the 24h percentage change:
    previous = value / (1 + change / 100)
    profit   = value - previous
"""

from __future__ import annotations

import json
import logging
from typing import Dict, Iterable, List, Mapping, Optional

from .schemas import CoinValue, PortfolioSummary
from .storage import HOLDINGS_KEY, LocalStorage

logger = logging.getLogger(__name__)

Holdings = Dict[str, float]


class HoldingsStore:
    def __init__(self, storage: LocalStorage, key: str = HOLDINGS_KEY):
        self.storage = storage
        self.key = key

    def load(self) -> Holdings:
        raw = self.storage.get_item(self.key)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            logger.error("Error loading holdings: stored value is not JSON")
            return {}
        if not isinstance(data, dict):
            logger.error("Error loading holdings: stored value is not an object")
            return {}
        out: Holdings = {}
        for coin_id, amount in data.items():
            try:
                out[coin_id] = float(amount)
            except (TypeError, ValueError):
                logger.warning("Dropping holding %r with bad amount %r", coin_id, amount)
        return out

    def save(self, holdings: Mapping[str, float]) -> None:
        self.storage.set_item(self.key, json.dumps(dict(holdings)))

    def set(self, coin_id: str, amount: float) -> Holdings:
        if amount < 0:
            raise ValueError("Amount cannot be negative")
        holdings = self.load()
        if amount == 0:
            holdings.pop(coin_id, None)
        else:
            holdings[coin_id] = float(amount)
        self.save(holdings)
        return holdings

    def remove(self, coin_id: str) -> Holdings:
        holdings = self.load()
        holdings.pop(coin_id, None)
        self.save(holdings)
        return holdings

    def clear(self) -> None:
        self.storage.remove_item(self.key)


def compute_portfolio_summary(
    holdings: Mapping[str, float],
    prices: Mapping[str, Mapping[str, float]],
    coins: Optional[Iterable[Mapping[str, str]]] = None,
) -> PortfolioSummary:
    """
    coins: optional metadata rows ({"id", "name", "symbol"}, e.g. from
    /coins/markets) used to label the entries.
    """
    meta = {c["id"]: c for c in coins or []}

    total_value = 0.0
    profit_24h = 0.0
    rows: List[dict] = []

    for coin_id, amount in holdings.items():
        price_data = prices.get(coin_id)
        if amount <= 0 or not price_data or price_data.get("usd") is None:
            continue
        price = float(price_data["usd"])
        change = float(price_data.get("usd_24h_change") or 0.0)
        value = amount * price
        previous = value / (1 + change / 100) if change > -100 else 0.0

        total_value += value
        profit_24h += value - previous
        rows.append({
            "id": coin_id,
            "name": meta.get(coin_id, {}).get("name"),
            "symbol": meta.get(coin_id, {}).get("symbol"),
            "amount": amount,
            "price": price,
            "value": value,
            "change_24h": change,
        })

    rows.sort(key=lambda r: r["value"], reverse=True)
    coins_out = [
        CoinValue(allocation=(r["value"] / total_value * 100) if total_value > 0 else 0.0, **r)
        for r in rows
    ]

    base = total_value - profit_24h
    profit_percentage = (profit_24h / base * 100) if total_value > 0 and base != 0 else 0.0

    return PortfolioSummary(
        total_value=total_value,
        profit_24h=profit_24h,
        profit_percentage=profit_percentage,
        coins_owned=len(coins_out),
        coins=coins_out,
    )
