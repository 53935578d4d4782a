"""Bounded HTTP fetcher for preview pages.

Requests run on worker threads (``asyncio.to_thread``) behind a semaphore, so
a slow site only occupies one of ``max_concurrent_fetches`` slots and never
blocks the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional
from urllib.parse import urljoin

import requests
from urllib3.exceptions import HTTPError, ReadTimeoutError

from .config import CrawlerConfig
from .errors import (
    ConnectionFailed,
    FetchTimeout,
    HttpStatus,
    TooLarge,
    TooManyRedirects,
)
from .extract_urls import normalize_url
from .models import FetchResult, FetchSpec

log = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_REDIRECT_CODES = {301, 302, 303, 307, 308}


class Fetcher:
    def __init__(
        self, config: CrawlerConfig, session: Optional[requests.Session] = None
    ) -> None:
        self.config = config
        self._semaphore = asyncio.Semaphore(max(1, config.max_concurrent_fetches))
        self.session = session or self._build_session(config)

    @staticmethod
    def _build_session(config: CrawlerConfig) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "User-Agent": config.user_agent,
                "Accept-Language": config.accept_language,
                "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.5",
            }
        )
        if config.proxy:
            session.proxies.update({"http": config.proxy, "https": config.proxy})
        return session

    async def fetch(self, spec: FetchSpec) -> FetchResult:
        """Download ``spec.target_url``.

        Raises one of the ``FetchError`` subclasses; never retries.
        """
        async with self._semaphore:
            log.info("Fetching URL preview for: %s", spec.target_url)
            return await asyncio.to_thread(self._fetch_blocking, spec.target_url)

    def close(self) -> None:
        self.session.close()

    # ── blocking part, runs on a worker thread ──────────────────────────

    def _fetch_blocking(self, url: str) -> FetchResult:
        deadline = time.monotonic() + self.config.timeout_seconds
        start_url = url
        for _hop in range(self.config.max_redirects + 1):
            response = self._request(url, deadline)
            try:
                if response.status_code in _REDIRECT_CODES:
                    url = self._redirect_target(url, response)
                    continue
                if response.status_code >= 400:
                    raise HttpStatus(response.status_code, url)
                return self._read_body(url, response, deadline)
            finally:
                response.close()
        raise TooManyRedirects(
            f"more than {self.config.max_redirects} redirects starting at {start_url}"
        )

    def _request(self, url: str, deadline: float) -> requests.Response:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise FetchTimeout(f"timed out before requesting {url}")
        try:
            return self.session.get(
                url, stream=True, allow_redirects=False, timeout=remaining
            )
        except requests.Timeout as exc:
            raise FetchTimeout(f"{url}: {exc}") from exc
        except requests.RequestException as exc:
            raise ConnectionFailed(f"{url}: {exc}") from exc

    @staticmethod
    def _redirect_target(url: str, response: requests.Response) -> str:
        location = response.headers.get("Location")
        if not location:
            raise HttpStatus(response.status_code, url)
        target = normalize_url(urljoin(url, location))
        if target is None:
            raise ConnectionFailed(f"{url}: unusable redirect to {location!r}")
        log.debug("Redirect %s -> %s", url, target)
        return target

    def _read_body(
        self, url: str, response: requests.Response, deadline: float
    ) -> FetchResult:
        limit = self.config.max_body_bytes
        declared = response.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise TooLarge(f"{url}: Content-Length {declared} exceeds {limit}")

        body = bytearray()
        raw = response.raw
        try:
            while True:
                if time.monotonic() > deadline:
                    raise FetchTimeout(f"{url}: read timed out")
                # one socket read per call, so the deadline is checked between reads
                chunk = raw.read1(_CHUNK_SIZE, decode_content=True)
                if not chunk:
                    break
                body.extend(chunk)
                if len(body) > limit:
                    raise TooLarge(f"{url}: body exceeds {limit} bytes")
        except (ReadTimeoutError, TimeoutError) as exc:
            raise FetchTimeout(f"{url}: {exc}") from exc
        except (HTTPError, OSError) as exc:
            raise ConnectionFailed(f"{url}: {exc}") from exc

        content_type = response.headers.get("Content-Type", "")
        charset = None
        if "charset=" in content_type.lower():
            charset = response.encoding
        return FetchResult(
            url=url,
            content=bytes(body),
            content_type=content_type.split(";")[0].strip().lower(),
            charset=charset,
        )
