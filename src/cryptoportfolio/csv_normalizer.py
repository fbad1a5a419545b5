# csv_normalizer.py
"""
CSV transaction files: validation and parsing.

Expected columns (case-insensitive, any order):
    timestamp,type,coin,amount[,price][,fee]

- timestamp: YYYY-MM-DD HH:MM:SS
- type: BUY, SELL, DEPOSIT or WITHDRAWAL
- coin: non-empty ticker
- amount: positive number
- price, fee: optional numbers; empty cells become None

Design choices:
- This module is "pure" (no DB calls). It converts raw text -> records.
- All-or-nothing: the first bad row raises CsvFormatError and nothing is returned.
  The message is meant to be shown to the user as is.
- Cells are read with the csv module, so quoted values ("1,000.5") are honoured.
"""

from __future__ import annotations

import csv
import math
import re
from io import StringIO
from typing import Any, Dict, List

from .schemas import TransactionRecord

REQUIRED_COLUMNS = ["timestamp", "type", "coin", "amount"]
OPTIONAL_COLUMNS = ["price", "fee"]
VALID_TYPES = ["BUY", "SELL", "DEPOSIT", "WITHDRAWAL"]

TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$", re.ASCII)
# plain decimal notation only: no underscores, no non-ASCII digits
NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$", re.ASCII)


class CsvFormatError(ValueError):
    """The uploaded CSV does not follow the expected format."""


def _read_rows(content: str) -> List[List[str]]:
    """All non-blank rows, header included, cells stripped."""
    reader = csv.reader(StringIO(content))
    rows = []
    for row in reader:
        cells = [c.strip() for c in row]
        if any(cells):
            rows.append(cells)
    return rows


def _normalize_headers(headers: List[str]) -> List[str]:
    """Lowercase and strip whitespace so headers are matched flexibly."""
    return [h.strip().lower() for h in headers]


def _cell(row: List[str], index: int) -> str:
    return row[index] if 0 <= index < len(row) else ""


def _to_number(raw: str) -> float | None:
    if not NUMBER_RE.match(raw):
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def validate_csv_format(content: str) -> bool:
    """
    Check the whole file and return True, or raise CsvFormatError describing
    the first problem found. Row numbers count the header as row 1.
    """
    rows = _read_rows(content)
    if len(rows) < 2:
        raise CsvFormatError("CSV file must contain at least a header and one transaction row")

    header = _normalize_headers(rows[0])
    for column in REQUIRED_COLUMNS:
        if column not in header:
            raise CsvFormatError(f"Missing required column: {column}")

    idx = {name: header.index(name) for name in REQUIRED_COLUMNS + OPTIONAL_COLUMNS if name in header}

    for i, row in enumerate(rows[1:], start=2):
        if len(row) < len(REQUIRED_COLUMNS):
            raise CsvFormatError(f"Row {i}: Insufficient columns. Expected at least 4 columns.")

        if not TIMESTAMP_RE.match(_cell(row, idx["timestamp"])):
            raise CsvFormatError(f"Row {i}: Invalid timestamp format. Expected YYYY-MM-DD HH:MM:SS")

        if _cell(row, idx["type"]).upper() not in VALID_TYPES:
            raise CsvFormatError(
                f"Row {i}: Invalid transaction type. Must be one of: {', '.join(VALID_TYPES)}"
            )

        if not _cell(row, idx["coin"]):
            raise CsvFormatError(f"Row {i}: Coin cannot be empty")

        amount = _to_number(_cell(row, idx["amount"]))
        if amount is None or amount <= 0:
            raise CsvFormatError(f"Row {i}: Invalid amount. Must be a positive number")

        for optional in OPTIONAL_COLUMNS:
            raw = _cell(row, idx[optional]) if optional in idx else ""
            if raw and _to_number(raw) is None:
                raise CsvFormatError(f"Row {i}: Invalid {optional}. Must be a number")

    return True


def parse_csv_transactions(content: str) -> List[Dict[str, Any]]:
    """
    Build one dict per data row, locating cells by header position.
    Call validate_csv_format first; rows with fewer than 4 cells are skipped.
    """
    rows = _read_rows(content)
    if not rows:
        return []
    header = _normalize_headers(rows[0])

    def index_of(name: str) -> int:
        return header.index(name) if name in header else -1

    ts_i, type_i, coin_i, amount_i = (index_of(c) for c in REQUIRED_COLUMNS)
    price_i, fee_i = index_of("price"), index_of("fee")

    transactions: List[Dict[str, Any]] = []
    for row in rows[1:]:
        if len(row) < len(REQUIRED_COLUMNS):
            continue
        price_raw = _cell(row, price_i)
        fee_raw = _cell(row, fee_i)
        transactions.append({
            "timestamp": _cell(row, ts_i),
            "type": _cell(row, type_i).upper(),
            "coin": _cell(row, coin_i).upper(),
            "amount": float(_cell(row, amount_i)),
            "price": float(price_raw) if price_raw else None,
            "fee": float(fee_raw) if fee_raw else None,
        })
    return transactions


def parse_csv_bytes(file_bytes: bytes, encoding: str = "utf-8-sig") -> List[TransactionRecord]:
    """
    Uploaded bytes -> validated TransactionRecord list.

    utf-8-sig strips the BOM that spreadsheet exports like to prepend.
    Raises CsvFormatError for undecodable files and for any format problem.
    """
    try:
        content = file_bytes.decode(encoding)
    except UnicodeDecodeError as e:
        raise CsvFormatError(f"File is not valid {encoding} text") from e

    validate_csv_format(content)
    return [TransactionRecord(**tx) for tx in parse_csv_transactions(content)]


def create_sample_csv() -> str:
    """A small, valid file users can download as a template."""
    return (
        "Timestamp,Type,Coin,Amount,Price,Fee\n"
        "2023-01-15 14:30:00,BUY,BTC,0.5,15000.00,15.00\n"
        "2023-02-20 09:15:00,SELL,ETH,2.0,1200.00,2.40\n"
        "2023-03-10 16:45:00,DEPOSIT,USDT,1000.00,1.00,0.00\n"
        "2023-04-05 11:20:00,WITHDRAWAL,LTC,5.0,50.00,0.50"
    )
