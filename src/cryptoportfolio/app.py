# app.py
"""
Main FastAPI application.

This file wires together:
- the web server (FastAPI + Uvicorn)
- auth (bcrypt passwords, JWT bearer tokens)
- exchange API-key storage (secrets encrypted at rest)
- the CSV transaction importer
- the shared market data service (CoinGecko, cached)

Endpoints:
  GET    /health                    → liveness check
  GET    /version                   → app version metadata
  POST   /api/auth/register         → create an account
  POST   /api/auth/login            → exchange credentials for a token
  GET    /api/auth/me               → who am I (bearer)
  GET    /api/exchanges             → supported exchanges
  POST   /api/apikeys               → store an exchange API key (bearer)
  GET    /api/apikeys               → list my API keys (bearer)
  DELETE /api/apikeys/{id}          → remove one of my API keys (bearer)
  POST   /api/transactions/preview  → parse CSV and PREVIEW (no DB writes) (bearer)
  POST   /api/transactions/import   → parse CSV and SAVE to DB (bearer)
  GET    /api/transactions          → list my saved transactions (bearer)
  GET    /api/market/prices         → latest prices for ?ids=bitcoin,ethereum
  GET    /api/market/coins          → market data with sparklines
  POST   /api/portfolio/summary     → value a holdings map (bearer)

Every error answers JSON {"message": "..."}.

  Command to start the server: uvicorn cryptoportfolio.app:app --reload
"""

from __future__ import annotations

import hashlib
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .__about__ import __title__, __version__
from .config import configure_logging, settings
from .csv_normalizer import CsvFormatError, parse_csv_bytes
from .db import DEMO_USER, get_db, init_db
from .market import MarketDataError, MarketDataService, RateLimitedError
from .models import ApiKey, Exchange, Transaction, User
from .portfolio import compute_portfolio_summary
from .schemas import (
    ApiKeyCreate,
    ApiKeyCreated,
    ApiKeyOut,
    ExchangeOut,
    HealthOut,
    ImportPreviewResponse,
    ImportResponse,
    LoginRequest,
    LoginResponse,
    PortfolioRequest,
    PortfolioSummary,
    RegisterRequest,
    RegisterResponse,
    StoredTransaction,
    TransactionPage,
    TransactionRecord,
    UserOut,
)
from .security import (
    TokenError,
    create_access_token,
    decode_access_token,
    decrypt_secret,
    encrypt_secret,
    hash_password,
    mask_secret,
    verify_password,
)

configure_logging()
logger = logging.getLogger(__name__)

init_db()

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def compute_tx_hash(tx: TransactionRecord, exchange: str | None = None) -> str:
    """
    Deterministic SHA-256 over the transaction fields, used to skip rows that
    were already imported (same CSV uploaded twice).
    Even tiny differences (fee=1 vs fee=1.5) give a different hash.
    """
    base_string = (
        f"{tx.timestamp}|"
        f"{tx.type}|"
        f"{tx.coin}|"
        f"{tx.amount!r}|"
        f"{tx.price!r}|"
        f"{tx.fee!r}|"
        f"{exchange or ''}"
    )
    return hashlib.sha256(base_string.encode("utf-8")).hexdigest()


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(status_code=401, detail=message, headers={"WWW-Authenticate": "Bearer"})


def _split_ids(ids: str) -> List[str]:
    out = [i.strip().lower() for i in ids.split(",") if i.strip()]
    if not out:
        raise HTTPException(status_code=400, detail="ids query parameter is required")
    return out


async def _read_csv_upload(file: UploadFile) -> tuple[str, List[TransactionRecord]]:
    filename = file.filename or ""
    if not filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Please upload a .csv file")

    data = await file.read()
    if len(data) == 0:
        raise HTTPException(status_code=400, detail="Empty file")

    try:
        return filename, parse_csv_bytes(data)
    except CsvFormatError as e:
        raise HTTPException(status_code=400, detail=str(e))


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------

def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    """Resolve `Authorization: Bearer <jwt>` to a User or answer 401."""
    if not authorization or not authorization.startswith("Bearer "):
        raise _unauthorized("Authorization header required")

    try:
        claims = decode_access_token(authorization[len("Bearer "):].strip())
    except TokenError:
        raise _unauthorized("Invalid token")

    user = db.scalars(select(User).where(User.email == claims["sub"])).first()
    if user is None:
        raise _unauthorized("Invalid token user")
    return user


def get_market(request: Request) -> MarketDataService:
    return request.app.state.market


def _market_call(fn, ids: List[str]) -> Any:
    try:
        return fn(ids)
    except RateLimitedError as e:
        raise HTTPException(status_code=429, detail=str(e))
    except MarketDataError as e:
        raise HTTPException(status_code=502, detail=f"Market data unavailable: {e}")


# -----------------------------------------------------------------------------
# Application factory & startup
# -----------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("%s %s ready", __title__, __version__)
    logger.info("Demo credentials: %s / %s", DEMO_USER["email"], DEMO_USER["password"])
    yield


app = FastAPI(
    title=__title__,
    version=__version__,
    description="Backend API for tracking crypto holdings, exchange keys and imported transactions.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# one market service per process: its cache and rate-limit state are shared by all requests
app.state.market = MarketDataService()


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"message": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        where = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query"))
        message = f"{where}: {first.get('msg')}" if where else str(first.get("msg"))
    return JSONResponse({"message": message}, status_code=400)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"message": "Internal server error"}, status_code=500)


# -----------------------------------------------------------------------------
# Health + version endpoints (simple sanity checks)
# -----------------------------------------------------------------------------
@app.get("/health", response_model=HealthOut)
def health() -> Dict[str, str]:
    """Quick liveness check for monitoring or manual testing."""
    return {"status": "OK", "message": f"{__title__} API is running"}


@app.get("/version")
def version() -> Dict[str, str]:
    """Show the backend name and version (useful to confirm deployments)."""
    return {"name": __title__, "version": __version__}


# -----------------------------------------------------------------------------
# Auth
# -----------------------------------------------------------------------------
@app.post("/api/auth/register", response_model=RegisterResponse, status_code=201)
def register(payload: RegisterRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    email = (payload.email or "").strip().lower()
    password = payload.password or ""
    if not email or not password.strip():
        raise HTTPException(status_code=400, detail="Email and password required")

    if db.scalars(select(User).where(User.email == email)).first() is not None:
        raise HTTPException(status_code=400, detail="Email already taken")

    user = User(name=(payload.name or "").strip(), email=email, password=hash_password(password))
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # two registrations for the same email racing each other
        db.rollback()
        raise HTTPException(status_code=400, detail="Email already taken")
    db.refresh(user)

    logger.info("Registered user id=%s", user.id)
    return {"user": UserOut.model_validate(user)}


@app.post("/api/auth/login", response_model=LoginResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    email = (payload.email or "").strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    user = db.scalars(select(User).where(User.email == email)).first()
    if user is None or not verify_password(payload.password, user.password):
        logger.info("Failed login for %s", email)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    return {"token": create_access_token(user.email), "user": UserOut.model_validate(user)}


@app.get("/api/auth/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)) -> User:
    return user


# -----------------------------------------------------------------------------
# Exchanges + API keys
# -----------------------------------------------------------------------------
@app.get("/api/exchanges", response_model=List[ExchangeOut])
def list_exchanges(db: Session = Depends(get_db)) -> List[Exchange]:
    return list(db.scalars(select(Exchange).order_by(Exchange.id)).all())


@app.post("/api/apikeys", response_model=ApiKeyCreated, status_code=201)
def create_api_key(
    payload: ApiKeyCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Store an exchange API key for the caller. The secret is encrypted before it touches the DB."""
    if not payload.exchange_id or not (payload.api_key or "").strip() or not (payload.api_secret or "").strip():
        raise HTTPException(status_code=400, detail="exchangeId, apiKey, and apiSecret are required")

    exchange = db.get(Exchange, payload.exchange_id)
    if exchange is None:
        raise HTTPException(status_code=400, detail="Exchange not found")

    rec = ApiKey(
        user_id=user.id,
        exchange_id=exchange.id,
        label=(payload.label or "").strip() or "API Key",
        api_key=payload.api_key.strip(),
        api_secret_encrypted=encrypt_secret(payload.api_secret.strip()),
    )
    db.add(rec)
    db.commit()
    db.refresh(rec)

    logger.info("User %s stored API key %s for %s", user.id, rec.id, exchange.name)
    return {"id": rec.id, "exchange_id": rec.exchange_id, "label": rec.label}


@app.get("/api/apikeys", response_model=List[ApiKeyOut])
def list_api_keys(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    rows = db.scalars(select(ApiKey).where(ApiKey.user_id == user.id).order_by(ApiKey.id)).all()
    out = []
    for k in rows:
        try:
            masked = mask_secret(decrypt_secret(k.api_secret_encrypted))
        except ValueError:
            logger.warning("API key %s cannot be decrypted with the current key", k.id)
            masked = "****"
        out.append({
            "id": k.id,
            "exchange_id": k.exchange_id,
            "exchange": k.exchange.name if k.exchange else "Unknown",
            "label": k.label,
            "api_key": k.api_key,
            "api_secret_masked": masked,
            "created_at": k.created_at,
        })
    return out


@app.delete("/api/apikeys/{key_id}", status_code=204)
def delete_api_key(key_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Response:
    rec = db.scalars(select(ApiKey).where(ApiKey.id == key_id, ApiKey.user_id == user.id)).first()
    if rec is None:
        raise HTTPException(status_code=404, detail="API key not found")
    db.delete(rec)
    db.commit()
    return Response(status_code=204)


# -----------------------------------------------------------------------------
# CSV endpoints
# -----------------------------------------------------------------------------
@app.post("/api/transactions/preview", response_model=ImportPreviewResponse)
async def preview_transactions(
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    """
    Accept a CSV upload, validate & parse it, and return a PREVIEW (no DB writes).
    The first bad row rejects the whole file with a 400 explaining what is wrong.
    """
    filename, records = await _read_csv_upload(file)
    return {"filename": filename, "total": len(records), "transactions": records}


@app.post("/api/transactions/import", response_model=ImportResponse)
async def import_transactions(
    file: UploadFile = File(...),
    exchange: Optional[str] = Form(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """
    Same validation as the preview, then SAVE the rows for the caller.
    Rows already stored (same hash) are skipped, so re-uploading a file is harmless.
    """
    filename, records = await _read_csv_upload(file)

    existing = set(db.scalars(select(Transaction.hash).where(Transaction.user_id == user.id)).all())
    inserted = 0
    skipped_duplicates = 0
    for tx in records:
        tx_hash = compute_tx_hash(tx, exchange)
        if tx_hash in existing:
            skipped_duplicates += 1
            continue
        existing.add(tx_hash)
        db.add(Transaction(user_id=user.id, hash=tx_hash, exchange=exchange, **tx.model_dump()))
        inserted += 1
    db.commit()

    logger.info("User %s imported %s rows from %s (%s duplicates)", user.id, inserted, filename, skipped_duplicates)
    return {"filename": filename, "inserted": inserted, "skipped_duplicates": skipped_duplicates}


@app.get("/api/transactions", response_model=TransactionPage)
def list_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500, alias="pageSize"),
    coin: Optional[str] = None,
    type: Optional[str] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """
    Paginated, filterable list of the caller's transactions, newest first.
    """
    conds = [Transaction.user_id == user.id]
    if coin:
        conds.append(Transaction.coin == coin.upper())
    if type:
        conds.append(Transaction.type == type.upper())

    total = db.scalar(select(func.count()).select_from(Transaction).where(*conds)) or 0
    rows = db.scalars(
        select(Transaction)
        .where(*conds)
        .order_by(Transaction.timestamp.desc(), Transaction.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return {
        "page": page,
        "page_size": page_size,
        "total": total,
        "items": [StoredTransaction.model_validate(r) for r in rows],
    }


# -----------------------------------------------------------------------------
# Market data + portfolio
# -----------------------------------------------------------------------------
@app.get("/api/market/prices")
def market_prices(ids: str = Query(""), market: MarketDataService = Depends(get_market)) -> Dict[str, Any]:
    return _market_call(market.get_prices, _split_ids(ids))


@app.get("/api/market/coins")
def market_coins(ids: str = Query(""), market: MarketDataService = Depends(get_market)) -> List[Dict[str, Any]]:
    return _market_call(market.get_market_data_with_sparklines, _split_ids(ids))


@app.post("/api/portfolio/summary", response_model=PortfolioSummary)
def portfolio_summary(
    payload: PortfolioRequest,
    user: User = Depends(get_current_user),
    market: MarketDataService = Depends(get_market),
) -> PortfolioSummary:
    ids = sorted(coin_id for coin_id, amount in payload.holdings.items() if amount > 0)
    prices = _market_call(market.get_prices, ids) if ids else {}
    return compute_portfolio_summary(payload.holdings, prices)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
