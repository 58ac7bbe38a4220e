"""HTTP client with retries, timeouts, and host-aware rate limiting."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from types import TracebackType
from typing import Any
from urllib.parse import urlparse

import requests
from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from metro_events.common.constants import USER_AGENT
from metro_events.common.errors import FatalFetchError, TransientFetchError
from metro_events.common.logging import get_logger, log_event

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
_MALFORMED_URL_ERRORS = (
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidURL,
)


@dataclass(frozen=True)
class TimeoutConfig:
    connect: float = 20.0
    read: float = 60.0


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 4
    multiplier: float = 1.0
    max_wait: float = 10.0
    jitter: float = 1.0

    @classmethod
    def from_config(cls, cfg: dict) -> "RetryConfig":
        return cls(
            max_attempts=int(cfg.get("max_attempts", cls.max_attempts)),
            multiplier=float(cfg.get("backoff_initial", cls.multiplier)),
            max_wait=float(cfg.get("backoff_max", cls.max_wait)),
            jitter=float(cfg.get("jitter", cls.jitter)),
        )


class TokenBucket:
    def __init__(self, rate_per_sec: float, capacity: float | None = None) -> None:
        self.rate_per_sec = rate_per_sec
        self.capacity = capacity if capacity is not None else max(rate_per_sec, 1.0)
        self.tokens = self.capacity
        self.updated_at = time.monotonic()
        self.lock = threading.Lock()

    def acquire(self, tokens: float = 1.0) -> None:
        while True:
            with self.lock:
                now = time.monotonic()
                elapsed = now - self.updated_at
                self.tokens = min(self.capacity, self.tokens + elapsed * self.rate_per_sec)
                self.updated_at = now
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return
                deficit = tokens - self.tokens
                wait_for = max(deficit / self.rate_per_sec, 0.01)
            time.sleep(wait_for)


class HostRateLimiter:
    def __init__(self, default_rate_per_sec: float, per_host: dict[str, float] | None = None) -> None:
        self.default_rate_per_sec = default_rate_per_sec
        self.per_host = dict(per_host or {})
        self.buckets: dict[str, TokenBucket] = {}
        self.lock = threading.Lock()

    def set_rate(self, host: str, rate_per_sec: float) -> None:
        with self.lock:
            self.per_host[host] = rate_per_sec
            self.buckets.pop(host, None)

    def acquire(self, host: str, tokens: float = 1.0) -> None:
        if self.default_rate_per_sec <= 0 and host not in self.per_host:
            return
        with self.lock:
            bucket = self.buckets.get(host)
            if bucket is None:
                bucket = TokenBucket(rate_per_sec=self.per_host.get(host, self.default_rate_per_sec))
                self.buckets[host] = bucket
        bucket.acquire(tokens=tokens)


class HttpClient:
    def __init__(
        self,
        *,
        timeout: TimeoutConfig | None = None,
        retry: RetryConfig | None = None,
        rate_per_sec: float = 2.0,
        logger: logging.Logger | None = None,
        log_fields: dict[str, Any] | None = None,
    ) -> None:
        self.timeout = timeout or TimeoutConfig()
        self.retry = retry or RetryConfig()
        self.session = requests.Session()
        self.limiter = HostRateLimiter(default_rate_per_sec=rate_per_sec)
        self.logger = logger or get_logger("http")
        self.log_fields = dict(log_fields or {})

    @classmethod
    def from_config(cls, http_cfg: dict, **kwargs: Any) -> "HttpClient":
        kwargs.setdefault("rate_per_sec", float(http_cfg.get("default_rate_per_sec", 2.0)))
        return cls(
            timeout=TimeoutConfig(
                connect=float(http_cfg.get("connect_timeout", 20.0)),
                read=float(http_cfg.get("read_timeout", 60.0)),
            ),
            retry=RetryConfig.from_config(http_cfg),
            **kwargs,
        )

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _host(self, url: str) -> str:
        return urlparse(url).netloc

    def _headers(self, headers: dict[str, str] | None, accept: str) -> dict[str, str]:
        out = {"User-Agent": USER_AGENT, "Accept": accept, "Accept-Language": "en-US,en;q=0.9"}
        if headers:
            out.update(headers)
        return out

    def _raise_for_status_or_retry(self, response: requests.Response, url: str) -> None:
        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            raise TransientFetchError(f"Retryable HTTP status {status} from {url}")
        if status >= 400:
            raise FatalFetchError(f"HTTP status {status} from {url}")

    def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json_body: Any,
        headers: dict[str, str],
        timeout: TimeoutConfig,
    ) -> requests.Response:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise FatalFetchError(f"Malformed URL: {url!r}")
        self.limiter.acquire(parsed.netloc)

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=(timeout.connect, timeout.read),
            )
        except _MALFORMED_URL_ERRORS as exc:
            raise FatalFetchError(f"Malformed URL: {url!r}") from exc
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
            raise TransientFetchError(f"{type(exc).__name__} fetching {url}") from exc
        except requests.exceptions.RequestException as exc:
            raise FatalFetchError(f"{type(exc).__name__} fetching {url}") from exc

        self._raise_for_status_or_retry(response, url)
        return response

    def _log_retry(self, url: str):
        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            log_event(
                self.logger,
                f"retrying {url}: {exc}",
                level=logging.WARNING,
                event="FETCH_RETRY",
                status="retry",
                attempt=state.attempt_number,
                error_code=getattr(exc, "error_code", None),
                **self.log_fields,
            )

        return _before_sleep

    def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        headers: dict[str, str] | None = None,
        timeout: TimeoutConfig | None = None,
        accept: str = "application/json",
    ) -> requests.Response:
        req_timeout = timeout or self.timeout
        merged_headers = self._headers(headers, accept)
        attempts = 0
        started = time.monotonic()

        @retry(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.retry.multiplier,
                max=self.retry.max_wait,
                jitter=self.retry.jitter,
            ),
            retry=retry_if_exception_type(TransientFetchError),
            before_sleep=self._log_retry(url),
            reraise=True,
        )
        def _wrapped() -> requests.Response:
            nonlocal attempts
            attempts += 1
            return self._send(
                method,
                url,
                params=params,
                json_body=json_body,
                headers=merged_headers,
                timeout=req_timeout,
            )

        try:
            response = _wrapped()
        except (TransientFetchError, FatalFetchError) as exc:
            log_event(
                self.logger,
                f"fetch failed for {url}: {exc}",
                level=logging.ERROR,
                event="FETCH_FAIL",
                status="error",
                attempt=attempts,
                duration_ms=int((time.monotonic() - started) * 1000),
                error_code=exc.error_code,
                **self.log_fields,
            )
            raise

        log_event(
            self.logger,
            f"fetched {url}",
            level=logging.DEBUG,
            event="FETCH_OK",
            status="ok",
            attempt=attempts,
            duration_ms=int((time.monotonic() - started) * 1000),
            **self.log_fields,
        )
        return response

    def get_json(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: TimeoutConfig | None = None,
    ) -> Any:
        response = self.request("GET", url, params=params, headers=headers, timeout=timeout)
        return _decode_json(response, url)

    def post_json(
        self,
        url: str,
        *,
        body: Any,
        headers: dict[str, str] | None = None,
        timeout: TimeoutConfig | None = None,
    ) -> Any:
        merged = {"Content-Type": "application/json"}
        if headers:
            merged.update(headers)
        response = self.request("POST", url, json_body=body, headers=merged, timeout=timeout)
        return _decode_json(response, url)

    def get_text(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: TimeoutConfig | None = None,
    ) -> str:
        response = self.request(
            "GET",
            url,
            params=params,
            headers=headers,
            timeout=timeout,
            accept="text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        )
        return response.text


def _decode_json(response: requests.Response, url: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise FatalFetchError(f"Invalid JSON payload from {url}") from exc
