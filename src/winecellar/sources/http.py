"""
HTTP transport with bounded retries and a per-run deadline.

Every network call made by the resolver and the cache goes through an
HttpClient instance so the transport can be replaced in tests.
"""

import http.client
import json
import logging
import socket
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar
from urllib.parse import urlparse

logger = logging.getLogger("winecellar.http")

USER_AGENT = "winecellar (+https://github.com/winecellar/winecellar)"

CHUNK_SIZE = 1024 * 64

# Hosts that accept the GitHub bearer token
_GITHUB_HOSTS = ("api.github.com", "github.com")

T = TypeVar("T")


class Deadline:
    """Overall time budget for one pipeline run."""

    def __init__(self, seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._end = None if not seconds or seconds <= 0 else clock() + seconds

    def remaining(self) -> Optional[float]:
        if self._end is None:
            return None
        return max(0.0, self._end - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def timeout(self, default: float) -> float:
        """Socket timeout for the next request, never past the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return max(0.1, min(default, remaining))


def is_transient(exc: BaseException) -> bool:
    """Whether a transport error is worth another attempt."""
    if isinstance(exc, urllib.error.HTTPError):
        return exc.code >= 500 or exc.code in (408, 429)
    return isinstance(exc, (urllib.error.URLError, http.client.HTTPException, socket.timeout,
                            TimeoutError, ConnectionError))


def with_retries(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    backoff: float = 1.0,
    deadline: Optional[Deadline] = None,
    describe: str = "request",
    retry_on: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn until it succeeds, backing off exponentially between attempts.

    Non-transient errors propagate immediately. When attempts run out, or
    the deadline has passed, the last error propagates.
    """
    deadline = deadline or Deadline()
    attempt = 0
    while True:
        attempt += 1
        if deadline.expired:
            raise TimeoutError(f"Deadline exceeded before {describe}")
        try:
            return fn()
        except Exception as e:
            if not retry_on(e) or attempt >= attempts:
                raise
            delay = backoff * (2 ** (attempt - 1))
            remaining = deadline.remaining()
            if remaining is not None:
                if remaining <= 0:
                    raise
                delay = min(delay, remaining)
            logger.warning("%s failed (attempt %d/%d): %s; retrying in %.1fs",
                           describe, attempt, attempts, e, delay)
            sleep(delay)


class HttpClient:
    """Thin urllib client: JSON GETs and streaming downloads."""

    def __init__(
        self,
        timeout: float = 30.0,
        github_token: Optional[str] = None,
        user_agent: str = USER_AGENT,
    ):
        self.timeout = timeout
        self.github_token = github_token
        self.user_agent = user_agent

    def _headers(self, url: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        if self.github_token and urlparse(url).hostname in _GITHUB_HOSTS:
            headers["Authorization"] = f"Bearer {self.github_token}"
        if extra:
            headers.update(extra)
        return headers

    def get_json(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> Any:
        timeout = deadline.timeout(self.timeout) if deadline else self.timeout
        logger.debug("GET %s", url)
        req = urllib.request.Request(url, headers=self._headers(url, headers))
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))

    def download(
        self,
        url: str,
        dest: Path,
        headers: Optional[Dict[str, str]] = None,
        deadline: Optional[Deadline] = None,
    ) -> Path:
        """Stream url into dest, overwriting any partial file from a prior attempt."""
        timeout = deadline.timeout(self.timeout) if deadline else self.timeout
        logger.debug("Downloading %s -> %s", url, dest)
        req = urllib.request.Request(url, headers=self._headers(url, headers))
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            with open(dest, "wb") as f:
                while True:
                    chunk = resp.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)
        return dest
