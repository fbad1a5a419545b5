from __future__ import annotations

"""
Pydantic schemas (data models) used by the API.
- These define the structure, types, and validation rules for the data we accept/return.
- JSON uses camelCase (what the browser client sends); Python code uses snake_case.

Core ideas:
- Keep schemas separate from database models (ORM) to avoid coupling the API to storage.
- Request fields the handlers check by hand are Optional so a missing field gets
  the friendly 400 message instead of a generic validation error.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

TxType = Literal["BUY", "SELL", "DEPOSIT", "WITHDRAWAL"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------- Auth ----------

class RegisterRequest(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None


class UserOut(CamelModel):
    id: int
    name: str
    email: str


class RegisterResponse(CamelModel):
    user: UserOut


class LoginResponse(CamelModel):
    token: str
    user: UserOut


# ---------- Exchanges / API keys ----------

class ExchangeOut(CamelModel):
    id: int
    name: str
    base_url: Optional[str] = None


class ApiKeyCreate(CamelModel):
    exchange_id: Optional[int] = None
    label: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None


class ApiKeyCreated(CamelModel):
    message: str = "API key saved successfully"
    id: int
    exchange_id: int
    label: str


class ApiKeyOut(CamelModel):
    id: int
    exchange_id: int
    exchange: str
    label: str
    api_key: str
    api_secret_masked: str
    created_at: datetime


# ---------- Transactions ----------

class TransactionRecord(CamelModel):
    """
    One parsed CSV row.

      timestamp: "YYYY-MM-DD HH:MM:SS", kept as text exactly as imported.
      type: BUY / SELL / DEPOSIT / WITHDRAWAL.
      coin: ticker, upper-cased (BTC, ETH, ...).
      amount: quantity of coin, always > 0.
      price, fee: optional, None when the column is missing or the cell is empty.
    """

    timestamp: str
    type: TxType
    coin: str
    amount: float = Field(..., gt=0)
    price: Optional[float] = None
    fee: Optional[float] = None


class StoredTransaction(TransactionRecord):
    id: int
    exchange: Optional[str] = None
    created_at: datetime


class ImportPreviewResponse(CamelModel):
    filename: str
    total: int
    transactions: List[TransactionRecord]


class ImportResponse(CamelModel):
    filename: str
    inserted: int
    skipped_duplicates: int
    note: str = "Use GET /api/transactions to view saved rows."


class TransactionPage(CamelModel):
    page: int
    page_size: int
    total: int
    items: List[StoredTransaction]


# ---------- Market / portfolio ----------

class PortfolioRequest(CamelModel):
    holdings: Dict[str, float] = Field(default_factory=dict)

    @field_validator("holdings")
    @classmethod
    def _non_negative(cls, v: Dict[str, float]) -> Dict[str, float]:
        for coin_id, amount in v.items():
            if amount < 0:
                raise ValueError(f"holding for {coin_id!r} cannot be negative")
        return v


class CoinValue(CamelModel):
    id: str
    name: Optional[str] = None
    symbol: Optional[str] = None
    amount: float
    price: float
    value: float
    change_24h: float
    allocation: float


class PortfolioSummary(CamelModel):
    total_value: float
    profit_24h: float
    profit_percentage: float
    coins_owned: int
    coins: List[CoinValue]


class HealthOut(CamelModel):
    status: str
    message: str
