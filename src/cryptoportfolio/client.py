# client.py
"""
Thin HTTP client for the CryptoPortfolio REST API.

- Injects `Authorization: Bearer <token>` whenever a token is stored.
- Every non-2xx answer becomes an ApiError carrying the server's `message`
  (or the body text, or a generic fallback).
- A 401 forgets the stored token and raises SessionExpiredError so the caller
  can send the user back to sign in.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import requests

from .config import settings
from .storage import TokenStore

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class SessionExpiredError(ApiError):
    """401 from the server; the stored token has been cleared."""


class PortfolioApiClient:
    def __init__(
        self,
        base_url: str | None = None,
        token_store: TokenStore | None = None,
        session: requests.Session | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or f"http://localhost:{settings.port}").rstrip("/")
        self.token_store = token_store
        self.session = session or requests.Session()
        self.timeout = settings.http_timeout_seconds if timeout is None else timeout

    # ---------- plumbing ----------

    def _auth_headers(self) -> Dict[str, str]:
        token = self.token_store.get() if self.token_store else None
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _handle(self, resp: requests.Response) -> Any:
        payload: Any = None
        if "application/json" in resp.headers.get("content-type", ""):
            try:
                payload = resp.json()
            except ValueError:
                payload = None
        elif resp.content:
            payload = resp.text

        if resp.ok:
            return payload

        if isinstance(payload, dict) and payload.get("message"):
            msg = str(payload["message"])
        elif isinstance(payload, str) and payload:
            msg = payload
        else:
            msg = f"Request failed with status {resp.status_code}"

        if resp.status_code == 401:
            if self.token_store:
                self.token_store.clear()
            raise SessionExpiredError(msg, 401)
        raise ApiError(msg, resp.status_code)

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}
        logger.debug("%s %s", method, url)
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error("Network error calling %s %s: %s", method, url, e)
            raise ApiError("Network error: Could not contact server") from e
        return self._handle(resp)

    # ---------- auth ----------

    def register(self, name: str, email: str, password: str) -> Dict[str, Any]:
        return self._request("POST", "/api/auth/register", json={"name": name, "email": email, "password": password})

    def login(self, email: str, password: str) -> Dict[str, Any]:
        data = self._request("POST", "/api/auth/login", json={"email": email, "password": password})
        if self.token_store and data.get("token"):
            self.token_store.set(data["token"])
        return data

    def logout(self) -> None:
        if self.token_store:
            self.token_store.clear()

    def me(self) -> Dict[str, Any]:
        return self._request("GET", "/api/auth/me")

    # ---------- exchanges / keys ----------

    def list_exchanges(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/exchanges")

    def create_api_key(self, exchange_id: int, api_key: str, api_secret: str, label: str | None = None) -> Dict[str, Any]:
        body = {"exchangeId": exchange_id, "apiKey": api_key, "apiSecret": api_secret, "label": label}
        return self._request("POST", "/api/apikeys", json=body)

    def list_api_keys(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/apikeys")

    def delete_api_key(self, key_id: int) -> None:
        self._request("DELETE", f"/api/apikeys/{key_id}")

    # ---------- transactions ----------

    def _upload(self, path: str, csv_path: str | Path, data: Dict[str, str] | None = None) -> Dict[str, Any]:
        p = Path(csv_path)
        with p.open("rb") as fh:
            return self._request("POST", path, files={"file": (p.name, fh, "text/csv")}, data=data)

    def preview_import(self, csv_path: str | Path) -> Dict[str, Any]:
        return self._upload("/api/transactions/preview", csv_path)

    def import_transactions(self, csv_path: str | Path, exchange: str | None = None) -> Dict[str, Any]:
        return self._upload("/api/transactions/import", csv_path, {"exchange": exchange} if exchange else None)

    def list_transactions(self, page: int = 1, page_size: int = 50, **filters: str) -> Dict[str, Any]:
        params = {"page": page, "pageSize": page_size, **{k: v for k, v in filters.items() if v}}
        return self._request("GET", "/api/transactions", params=params)

    # ---------- market / portfolio ----------

    def prices(self, ids: List[str]) -> Dict[str, Any]:
        return self._request("GET", "/api/market/prices", params={"ids": ",".join(ids)})

    def portfolio_summary(self, holdings: Mapping[str, float]) -> Dict[str, Any]:
        return self._request("POST", "/api/portfolio/summary", json={"holdings": dict(holdings)})

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/health")
