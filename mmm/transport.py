from __future__ import annotations

import http.client
import json
import socket
import threading
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import MmmSettings
from .errors import NotFoundError, RequestTimeoutError, TransientApiError
from .logs import get_logger

log = get_logger(__name__)

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


def _simple_exponential_backoff(attempt: int, base: float = 0.5, cap: float = 60.0) -> float:
    delay = base * (2 ** (attempt - 1))
    return min(delay, cap)


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return True
    reason = getattr(exc, "reason", None)
    return isinstance(reason, (socket.timeout, TimeoutError))


class RateLimiter:
    """Spaces calls out so that at most ``rate`` start per second across threads."""

    def __init__(self, rate: float, *, clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep):
        self._interval = 1.0 / rate if rate > 0 else 0.0
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def wait(self) -> None:
        if not self._interval:
            return
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self._interval
        delay = slot - now
        if delay > 0:
            self._sleep(delay)


class Transport:
    """Shared HTTP access for every registry call.

    Requests are rate limited, retried with exponential backoff on 429/5xx and
    connection failures, and bounded by a per-request timeout. A 404 surfaces as
    ``NotFoundError``; a timeout or a cancelled run surfaces as
    ``RequestTimeoutError`` and is never retried.
    """

    def __init__(
        self,
        settings: MmmSettings,
        *,
        cancel: Optional[threading.Event] = None,
        opener: Callable[..., Any] = urllib.request.urlopen,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.cancel = cancel or threading.Event()
        self._opener = opener
        self._sleep = sleep
        self._limiter = RateLimiter(settings.requests_per_second, sleep=sleep)

    def check_cancelled(self) -> None:
        if self.cancel.is_set():
            raise RequestTimeoutError("Operation cancelled.")

    def get_json(self, url: str, headers: Optional[Dict[str, str]] = None) -> Any:
        return self._decode(url, self._request("GET", url, headers=headers))

    def post_json(self, url: str, body: Any, headers: Optional[Dict[str, str]] = None) -> Any:
        merged = {"Content-Type": "application/json"}
        merged.update(headers or {})
        data = json.dumps(body).encode("utf-8")
        return self._decode(url, self._request("POST", url, headers=merged, data=data))

    def download(self, url: str, dest: Path, headers: Optional[Dict[str, str]] = None) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        response = self._open("GET", url, headers=headers, timeout=self.settings.download_timeout)
        try:
            with dest.open("wb") as handle:
                while True:
                    self.check_cancelled()
                    chunk = response.read(64 * 1024)
                    if not chunk:
                        break
                    handle.write(chunk)
        except (OSError, http.client.HTTPException) as exc:
            dest.unlink(missing_ok=True)
            if _is_timeout(exc):
                raise RequestTimeoutError(f"Timed out downloading {url}") from exc
            raise TransientApiError(f"Failed to download {url}: {exc}") from exc
        except RequestTimeoutError:
            dest.unlink(missing_ok=True)
            raise
        finally:
            response.close()

    def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        data: Optional[bytes] = None,
    ) -> bytes:
        attempts = self.settings.max_retries + 1
        attempt = 0
        while True:
            attempt += 1
            response = self._open(method, url, headers=headers, data=data, timeout=self.settings.request_timeout)
            try:
                return response.read()
            except (OSError, http.client.HTTPException) as exc:
                if _is_timeout(exc):
                    raise RequestTimeoutError(f"Timed out reading {url}") from exc
                if attempt >= attempts:
                    raise TransientApiError(f"Network error reading {url}: {exc!r}") from exc
            finally:
                response.close()
            self._backoff(attempt, url, None, None)

    def _open(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        data: Optional[bytes] = None,
        timeout: float,
    ) -> Any:
        attempts = self.settings.max_retries + 1
        attempt = 0
        while True:
            attempt += 1
            self.check_cancelled()
            self._limiter.wait()
            request = urllib.request.Request(url, data=data, method=method)
            for key, value in (headers or {}).items():
                if value is not None:
                    request.add_header(key, value)
            log.debug("http.request", method=method, url=url, attempt=attempt)
            try:
                return self._opener(request, timeout=timeout)
            except urllib.error.HTTPError as exc:
                detail = exc.read().decode("utf-8", errors="ignore") if exc.fp is not None else ""
                if exc.code == 404:
                    raise NotFoundError(f"HTTP 404 fetching {url}") from exc
                if exc.code in RETRYABLE_STATUSES and attempt < attempts:
                    self._backoff(attempt, url, exc.code, exc.headers.get("Retry-After") if exc.headers else None)
                    continue
                message = detail or exc.reason
                raise TransientApiError(f"HTTP {exc.code} error fetching {url}: {message}", status=exc.code) from exc
            except urllib.error.URLError as exc:
                if _is_timeout(exc):
                    raise RequestTimeoutError(f"Timed out fetching {url}") from exc
                if attempt < attempts:
                    self._backoff(attempt, url, None, None)
                    continue
                raise TransientApiError(f"Network error fetching {url}: {exc.reason}") from exc
            except (socket.timeout, TimeoutError) as exc:
                raise RequestTimeoutError(f"Timed out fetching {url}") from exc
            # dropped connections and malformed responses from http.client
            except (OSError, http.client.HTTPException) as exc:
                if attempt < attempts:
                    self._backoff(attempt, url, None, None)
                    continue
                raise TransientApiError(f"Network error fetching {url}: {exc!r}") from exc

    def _backoff(self, attempt: int, url: str, status: Optional[int], retry_after: Optional[str]) -> None:
        delay = _simple_exponential_backoff(attempt)
        if retry_after:
            try:
                delay = max(delay, float(retry_after))
            except ValueError:
                pass
        log.debug("http.retry", url=url, status=status, attempt=attempt, delay=delay)
        self._sleep(delay)

    @staticmethod
    def _decode(url: str, payload: bytes) -> Any:
        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TransientApiError(f"Invalid JSON payload from {url}: {exc}") from exc
