"""
A tiny key/value store in a JSON file, the local stand-in for browser
localStorage. Values are kept as strings, exactly like localStorage does.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

AUTH_TOKEN_KEY = "auth_token"
HOLDINGS_KEY = "crypto_holdings"


class LocalStorage:
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable storage file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = str(value)
            self._write(data)

    def remove_item(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)

    def clear(self) -> None:
        with self._lock:
            self._write({})


class TokenStore:
    """Bearer token kept under `auth_token`."""

    def __init__(self, storage: LocalStorage, key: str = AUTH_TOKEN_KEY):
        self.storage = storage
        self.key = key

    def get(self) -> Optional[str]:
        return self.storage.get_item(self.key)

    def set(self, token: str) -> None:
        self.storage.set_item(self.key, token)

    def clear(self) -> None:
        self.storage.remove_item(self.key)
