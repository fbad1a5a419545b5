# tests/smoke_test.py
# Run with:
#   pytest -q -m smoke --maxfail=1 --disable-warnings -rA

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from cryptoportfolio.app import app, get_market
from cryptoportfolio.csv_normalizer import create_sample_csv
from cryptoportfolio.db import SessionLocal
from cryptoportfolio.market import MarketDataError, RateLimitedError
from cryptoportfolio.models import ApiKey
from cryptoportfolio.security import create_access_token

client = TestClient(app)
pytestmark = pytest.mark.smoke

DEMO = {"email": "demo@example.com", "password": "demopass"}


# --------------------------------------------------------------------------------------
# Helpers
# --------------------------------------------------------------------------------------
class StubMarket:
    def __init__(self, prices=None, error=None):
        self.prices = prices or {}
        self.error = error
        self.calls = []

    def get_prices(self, ids):
        self.calls.append(list(ids))
        if self.error:
            raise self.error
        return {i: self.prices[i] for i in ids if i in self.prices}

    def get_market_data_with_sparklines(self, ids):
        if self.error:
            raise self.error
        return [{"id": i, "sparkline_in_7d": {"price": [1.0, 2.0]}} for i in ids]


@pytest.fixture(autouse=True)
def _clean_state(fresh_db):
    yield
    app.dependency_overrides.clear()


def _use_market(stub: StubMarket) -> StubMarket:
    app.dependency_overrides[get_market] = lambda: stub
    return stub


def _login(email=DEMO["email"], password=DEMO["password"]) -> dict:
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['token']}"}


def _register(name="Alice", email="alice@example.com", password="s3cret!"):
    return client.post("/api/auth/register", json={"name": name, "email": email, "password": password})


def _upload(path: str, content: str, headers: dict, filename: str = "tx.csv", data=None):
    return client.post(path, files={"file": (filename, content.encode(), "text/csv")}, data=data, headers=headers)


# --------------------------------------------------------------------------------------
# Health
# --------------------------------------------------------------------------------------
def test_health_and_version():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "OK"

    v = client.get("/version").json()
    assert v["name"] == "CryptoPortfolio"
    assert v["version"]


def test_unknown_route_uses_message_shape():
    r = client.get("/api/nope")
    assert r.status_code == 404
    assert "message" in r.json()


# --------------------------------------------------------------------------------------
# Auth
# --------------------------------------------------------------------------------------
def test_register_same_email_twice_is_rejected():
    first = _register()
    assert first.status_code == 201
    user = first.json()["user"]
    assert user["email"] == "alice@example.com"
    assert user["name"] == "Alice"
    assert "password" not in user

    second = _register(name="Other")
    assert second.status_code == 400
    assert second.json() == {"message": "Email already taken"}


def test_register_email_is_case_insensitive():
    assert _register(email="Bob@Example.com").status_code == 201
    assert _register(email="bob@example.com").status_code == 400


def test_register_requires_email_and_password():
    r = client.post("/api/auth/register", json={"name": "x", "email": "x@example.com"})
    assert r.status_code == 400
    assert r.json()["message"] == "Email and password required"


def test_login_with_demo_credentials():
    r = client.post("/api/auth/login", json=DEMO)
    assert r.status_code == 200
    body = r.json()
    assert body["token"]
    assert body["user"] == {"id": body["user"]["id"], "name": "Demo User", "email": "demo@example.com"}


def test_login_wrong_password_is_401():
    r = client.post("/api/auth/login", json={"email": DEMO["email"], "password": "nope"})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid credentials"


def test_login_unknown_email_is_401():
    r = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "x"})
    assert r.status_code == 401


def test_login_missing_fields_is_400():
    assert client.post("/api/auth/login", json={"email": DEMO["email"]}).status_code == 400


def test_malformed_body_is_400_with_message():
    r = client.post("/api/auth/login", content=b"not json", headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["message"]


def test_registered_user_can_log_in():
    _register()
    headers = _login("alice@example.com", "s3cret!")
    me = client.get("/api/auth/me", headers=headers).json()
    assert me["email"] == "alice@example.com"


def test_me_requires_authorization_header():
    r = client.get("/api/auth/me")
    assert r.status_code == 401
    assert r.json()["message"] == "Authorization header required"


def test_me_rejects_bad_tokens():
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"}).status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Token abc"}).status_code == 401

    forged = create_access_token(DEMO["email"], secret="someone-elses-secret")
    r = client.get("/api/auth/me", headers={"Authorization": f"Bearer {forged}"})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid token"


def test_me_with_token_for_missing_user():
    token = create_access_token("ghost@example.com")
    r = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid token user"


def test_me_returns_current_user():
    r = client.get("/api/auth/me", headers=_login())
    assert r.status_code == 200
    assert r.json()["email"] == DEMO["email"]


# --------------------------------------------------------------------------------------
# Exchanges + API keys
# --------------------------------------------------------------------------------------
def test_exchanges_are_public_and_seeded():
    r = client.get("/api/exchanges")
    assert r.status_code == 200
    names = [e["name"] for e in r.json()]
    assert names == ["Binance", "Coinbase", "Kraken"]
    assert r.json()[0]["baseUrl"] == "https://api.binance.com"


def test_apikeys_require_bearer():
    assert client.get("/api/apikeys").status_code == 401
    r = client.post("/api/apikeys", json={"exchangeId": 1, "apiKey": "k", "apiSecret": "s"})
    assert r.status_code == 401


def test_create_apikey_validation():
    headers = _login()
    r = client.post("/api/apikeys", json={"exchangeId": 1, "apiKey": "k"}, headers=headers)
    assert r.status_code == 400
    assert r.json()["message"] == "exchangeId, apiKey, and apiSecret are required"

    r = client.post("/api/apikeys", json={"exchangeId": 99, "apiKey": "k", "apiSecret": "s"}, headers=headers)
    assert r.status_code == 400
    assert r.json()["message"] == "Exchange not found"


def test_create_and_list_apikeys_scoped_to_user():
    headers = _login()
    r = client.post(
        "/api/apikeys",
        json={"exchangeId": 2, "label": "main", "apiKey": "pub-123", "apiSecret": "very-secret-9876"},
        headers=headers,
    )
    assert r.status_code == 201
    created = r.json()
    assert created["exchangeId"] == 2
    assert created["label"] == "main"

    keys = client.get("/api/apikeys", headers=headers).json()
    assert len(keys) == 1
    assert keys[0]["exchange"] == "Coinbase"
    assert keys[0]["apiKey"] == "pub-123"
    assert keys[0]["apiSecretMasked"] == "****9876"
    assert "apiSecret" not in keys[0]

    # the secret is not stored in the clear
    with SessionLocal() as db:
        row = db.scalars(select(ApiKey).where(ApiKey.id == created["id"])).one()
        assert "very-secret-9876" not in row.api_secret_encrypted

    _register()
    other = _login("alice@example.com", "s3cret!")
    assert client.get("/api/apikeys", headers=other).json() == []


def test_apikey_label_defaults():
    headers = _login()
    r = client.post("/api/apikeys", json={"exchangeId": "1", "apiKey": "k", "apiSecret": "secret"}, headers=headers)
    assert r.status_code == 201
    assert r.json()["label"] == "API Key"


def test_delete_apikey_only_for_owner():
    headers = _login()
    key_id = client.post(
        "/api/apikeys", json={"exchangeId": 1, "apiKey": "k", "apiSecret": "s"}, headers=headers
    ).json()["id"]

    _register()
    other = _login("alice@example.com", "s3cret!")
    assert client.delete(f"/api/apikeys/{key_id}", headers=other).status_code == 404

    assert client.delete(f"/api/apikeys/{key_id}", headers=headers).status_code == 204
    assert client.get("/api/apikeys", headers=headers).json() == []


# --------------------------------------------------------------------------------------
# CSV import
# --------------------------------------------------------------------------------------
def test_preview_sample_csv():
    r = _upload("/api/transactions/preview", create_sample_csv(), _login())
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["total"] == 4
    assert body["transactions"][0] == {
        "timestamp": "2023-01-15 14:30:00",
        "type": "BUY",
        "coin": "BTC",
        "amount": 0.5,
        "price": 15000.0,
        "fee": 15.0,
    }


def test_preview_rejects_bad_csv_with_message():
    r = _upload("/api/transactions/preview", "timestamp,type,coin\n2023-01-01 00:00:00,BUY,BTC", _login())
    assert r.status_code == 400
    assert r.json()["message"] == "Missing required column: amount"


def test_preview_rejects_non_csv_and_empty_files():
    headers = _login()
    r = _upload("/api/transactions/preview", create_sample_csv(), headers, filename="tx.txt")
    assert r.status_code == 400
    assert r.json()["message"] == "Please upload a .csv file"

    r = _upload("/api/transactions/preview", "", headers)
    assert r.status_code == 400
    assert r.json()["message"] == "Empty file"


def test_preview_requires_bearer():
    assert _upload("/api/transactions/preview", create_sample_csv(), {}).status_code == 401


def test_import_skips_duplicates_and_lists():
    headers = _login()
    first = _upload("/api/transactions/import", create_sample_csv(), headers, data={"exchange": "Binance"})
    assert first.status_code == 200, first.text
    assert first.json()["inserted"] == 4
    assert first.json()["skippedDuplicates"] == 0

    again = _upload("/api/transactions/import", create_sample_csv(), headers, data={"exchange": "Binance"})
    assert again.json()["inserted"] == 0
    assert again.json()["skippedDuplicates"] == 4

    page = client.get("/api/transactions", headers=headers).json()
    assert page["total"] == 4
    # newest first
    assert [t["coin"] for t in page["items"]] == ["LTC", "USDT", "ETH", "BTC"]
    assert page["items"][0]["exchange"] == "Binance"

    btc = client.get("/api/transactions", params={"coin": "btc"}, headers=headers).json()
    assert btc["total"] == 1
    assert btc["items"][0]["type"] == "BUY"

    small = client.get("/api/transactions", params={"page": 2, "pageSize": 3}, headers=headers).json()
    assert small["total"] == 4
    assert len(small["items"]) == 1


def test_transactions_are_private():
    _upload("/api/transactions/import", create_sample_csv(), _login())
    _register()
    other = _login("alice@example.com", "s3cret!")
    assert client.get("/api/transactions", headers=other).json()["total"] == 0


# --------------------------------------------------------------------------------------
# Market + portfolio
# --------------------------------------------------------------------------------------
def test_market_prices_go_through_shared_service():
    stub = _use_market(StubMarket({"bitcoin": {"usd": 50000.0, "usd_24h_change": 2.0}}))
    r = client.get("/api/market/prices", params={"ids": "Bitcoin"})
    assert r.status_code == 200
    assert r.json() == {"bitcoin": {"usd": 50000.0, "usd_24h_change": 2.0}}
    assert stub.calls == [["bitcoin"]]


def test_market_prices_requires_ids():
    _use_market(StubMarket())
    r = client.get("/api/market/prices")
    assert r.status_code == 400
    assert r.json()["message"] == "ids query parameter is required"


def test_market_prices_rate_limited_is_429():
    _use_market(StubMarket(error=RateLimitedError("Rate limited. Please wait before retrying.")))
    r = client.get("/api/market/prices", params={"ids": "bitcoin"})
    assert r.status_code == 429
    assert r.json()["message"] == "Rate limited. Please wait before retrying."


def test_market_failure_is_502():
    _use_market(StubMarket(error=MarketDataError("HTTP error! status: 500")))
    assert client.get("/api/market/prices", params={"ids": "bitcoin"}).status_code == 502
    assert client.get("/api/market/coins", params={"ids": "bitcoin"}).status_code == 502


def test_market_coins_with_sparklines():
    _use_market(StubMarket())
    r = client.get("/api/market/coins", params={"ids": "bitcoin,ethereum"})
    assert r.status_code == 200
    assert [c["id"] for c in r.json()] == ["bitcoin", "ethereum"]


def test_portfolio_summary():
    _use_market(StubMarket({
        "bitcoin": {"usd": 100.0, "usd_24h_change": 0.0},
        "ethereum": {"usd": 10.0, "usd_24h_change": 0.0},
    }))
    r = client.post(
        "/api/portfolio/summary",
        json={"holdings": {"bitcoin": 3, "ethereum": 10, "dogecoin": 0}},
        headers=_login(),
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["totalValue"] == pytest.approx(400.0)
    assert body["coinsOwned"] == 2
    assert [c["id"] for c in body["coins"]] == ["bitcoin", "ethereum"]
    assert body["coins"][0]["allocation"] == pytest.approx(75.0)


def test_portfolio_summary_rejects_negative_amounts():
    _use_market(StubMarket())
    r = client.post("/api/portfolio/summary", json={"holdings": {"bitcoin": -1}}, headers=_login())
    assert r.status_code == 400


def test_portfolio_summary_empty_holdings_skip_market():
    stub = _use_market(StubMarket())
    r = client.post("/api/portfolio/summary", json={"holdings": {}}, headers=_login())
    assert r.status_code == 200
    assert r.json()["totalValue"] == 0
    assert stub.calls == []
