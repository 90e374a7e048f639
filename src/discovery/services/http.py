from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import requests
from loguru import logger

from discovery.errors import NetworkError, ServerError


@dataclass
class RetryPolicy:
    retries: int = 2
    base_delay: float = 0.5


class TTLCache:
    """Small LRU cache whose entries expire after ``ttl`` seconds."""

    def __init__(self, ttl: float = 60 * 30, max_entries: int = 128) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self._entries: OrderedDict[str, Tuple[float, Any]] = OrderedDict()

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if not entry:
            return None
        ts, value = entry
        if time.time() - ts > self.ttl:
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any) -> None:
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = (time.time(), value)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class JsonHttpClient:
    """requests-based GET client with retries, mapping failures onto the discovery errors."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float,
        retry: Optional[RetryPolicy] = None,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base = base_url.rstrip("/")
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self.headers = {"Accept": "application/json", **(headers or {})}
        self.session = session or requests.Session()

    def get_json(self, path: str, params: dict) -> Any:
        url = f"{self.base}{path}"
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.session.get(url, headers=self.headers, params=params, timeout=self.timeout)
            except requests.RequestException as exc:  # timeouts and connection failures
                if attempt <= self.retry.retries:
                    time.sleep(self.retry.base_delay * attempt)
                    continue
                raise NetworkError(f"request error: {exc}") from exc

            if resp.status_code in (429, 500, 502, 503, 504):
                if attempt <= self.retry.retries:
                    logger.debug("retrying {} after status {}", path, resp.status_code)
                    time.sleep(self.retry.base_delay * attempt)
                    continue
                raise ServerError(f"upstream {resp.status_code}: {resp.text[:300]}")

            if not resp.ok:
                raise ServerError(f"upstream {resp.status_code}: {resp.text[:300]}")

            try:
                return resp.json()
            except ValueError:
                raise ServerError("invalid json response")

    def close(self) -> None:
        self.session.close()
