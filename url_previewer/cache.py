"""Shared preview cache with in-flight de-duplication.

One entry per normalized URL, shared by every room. A successful entry is
reused for ``min_refetch_interval`` seconds, so a URL is fetched at most once
per interval no matter how many people post it. Failures are cached too, for
the shorter ``failure_ttl``.

The cache is only touched from the event loop. Checking freshness, claiming
the in-flight slot and storing the outcome each run without an ``await`` in
between, which makes them atomic per URL.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Union

from .errors import NoMetadataFound, PreviewError
from .fetcher import Fetcher
from .metadata import extract_metadata
from .models import Metadata
from .rewrite import RewriteEngine

log = logging.getLogger(__name__)

Outcome = Union[Metadata, PreviewError]

_HTML_TYPES = {"", "text/html", "application/xhtml+xml"}


@dataclass(frozen=True)
class CacheEntry:
    outcome: Outcome
    fetched_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


class PreviewCache:
    def __init__(
        self,
        fetcher: Fetcher,
        rewrite: RewriteEngine,
        *,
        min_refetch_interval: float = 3600.0,
        failure_ttl: float = 300.0,
        max_entries: int = 4096,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fetcher = fetcher
        self.rewrite = rewrite
        self.min_refetch_interval = min_refetch_interval
        self.failure_ttl = failure_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._in_flight: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, url: str) -> CacheEntry | None:
        """Return the stored entry for *url* without refreshing it."""
        return self._entries.get(url)

    def is_in_flight(self, url: str) -> bool:
        return url in self._in_flight

    async def get_or_fetch(self, url: str) -> Outcome:
        """Best known outcome for *url*: fresh entry, shared in-flight fetch, or a new fetch."""
        entry = self._entries.get(url)
        if entry is not None:
            if entry.is_fresh(self._clock()):
                return entry.outcome
            del self._entries[url]

        task = self._in_flight.get(url)
        if task is None:
            task = asyncio.ensure_future(self._refresh(url))
            self._in_flight[url] = task
        # Shielded so one waiter being cancelled does not abort the fetch for the others.
        return await asyncio.shield(task)

    async def _refresh(self, url: str) -> Outcome:
        outcome: Outcome
        try:
            outcome = await self._fetch_and_extract(url)
        except PreviewError as exc:
            log.warning("No preview for %s: %s: %s", url, type(exc).__name__, exc)
            outcome = exc
        except Exception as exc:
            log.exception("Unexpected failure while previewing %s", url)
            outcome = PreviewError(f"{type(exc).__name__}: {exc}")
        finally:
            self._in_flight.pop(url, None)

        ttl = self.min_refetch_interval if isinstance(outcome, Metadata) else self.failure_ttl
        self._store(url, CacheEntry(outcome=outcome, fetched_at=self._clock(), ttl=ttl))
        return outcome

    async def _fetch_and_extract(self, url: str) -> Metadata:
        spec = self.rewrite.resolve(url)
        result = await self.fetcher.fetch(spec)
        if result.content_type not in _HTML_TYPES:
            raise NoMetadataFound(f"{result.url} is {result.content_type}, not HTML")
        # Parsing a large page is CPU-bound; keep it off the event loop.
        metadata = await asyncio.to_thread(
            extract_metadata,
            result.content,
            charset=result.charset,
            base_url=result.url,
            hint=spec.hint,
        )
        log.info("Preview for %s: %s", url, metadata)
        return metadata

    def _store(self, url: str, entry: CacheEntry) -> None:
        self._entries[url] = entry
        self._entries.move_to_end(url)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
