"""Error taxonomy of the preview pipeline.

Fetch and extraction errors never escape the preview cache: they are stored
as negative outcomes and read back as "no preview available".
"""

from __future__ import annotations


class PreviewError(Exception):
    """Base class for every failure that means "no preview for this URL"."""


class FetchError(PreviewError):
    pass


class FetchTimeout(FetchError):
    pass


class HttpStatus(FetchError):
    def __init__(self, code: int, url: str = "") -> None:
        super().__init__(f"HTTP {code} for {url}" if url else f"HTTP {code}")
        self.code = code
        self.url = url


class TooLarge(FetchError):
    pass


class ConnectionFailed(FetchError):
    pass


class TooManyRedirects(FetchError):
    pass


class ExtractionError(PreviewError):
    pass


class MalformedMarkup(ExtractionError):
    pass


class NoMetadataFound(ExtractionError):
    pass


class RaceSuperseded(Exception):
    """A pipeline result belongs to an edit that is no longer the latest.

    Expected during normal operation; callers drop it without logging an error.
    """
