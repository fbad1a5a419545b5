import os

# must be set before cryptoportfolio.config is imported
os.environ.setdefault("CRYPTO_PORTFOLIO_DB_URL", "sqlite://")
os.environ.setdefault("CRYPTO_PORTFOLIO_BCRYPT_ROUNDS", "4")
os.environ.setdefault("CRYPTO_PORTFOLIO_JWT_SECRET", "test-secret")
os.environ.setdefault("CRYPTO_PORTFOLIO_LOG_LEVEL", "WARNING")

import pytest


class FakeResponse:
    """Just enough of requests.Response for the code under test."""

    def __init__(self, status_code=200, json_data=None, text=None, headers=None):
        self.status_code = status_code
        self._json = json_data
        if text is None and json_data is not None:
            text = "<json>"
        self.text = text or ""
        self.content = self.text.encode()
        self.headers = headers if headers is not None else (
            {"content-type": "application/json"} if json_data is not None else {"content-type": "text/plain"}
        )

    @property
    def ok(self):
        return 200 <= self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fresh_db():
    from cryptoportfolio.db import reset_db

    reset_db()
    yield


@pytest.fixture
def make_response():
    return FakeResponse
