"""Page title and Open Graph extraction.

Pure function over fetched bytes. Only ``<meta>``, ``<link>``, ``<title>``
and heading text are read; scripts are never run and subresources are never
fetched.

Selector order mirrors Synapse's preview_html:
https://github.com/element-hq/synapse/blob/v1.132.0/synapse/media/preview_html.py#L237
"""

from __future__ import annotations

from typing import Iterable, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup, Tag

from .errors import MalformedMarkup, NoMetadataFound
from .models import STANDARD_EXTRACTION, ExtractionHint, Metadata
from .utils import collapse_whitespace

TITLE_SELECTORS = (
    'meta[property="og:title" i]',
    'meta[property="twitter:title" i]',
    'meta[name="twitter:title" i]',
)
TITLE_FALLBACK_SELECTORS = ("title", "h1", "h2", "h3")
DESCRIPTION_SELECTORS = (
    'meta[property="og:description" i]',
    'meta[property="twitter:description" i]',
    'meta[name="twitter:description" i]',
    'meta[name="description" i]',
)
SITE_NAME_SELECTORS = ('meta[property="og:site_name" i]',)
URL_SELECTORS = ('meta[property="og:url" i]', 'link[rel="canonical" i]')
IMAGE_SELECTORS = (
    'meta[property="og:image" i]',
    'meta[property="og:image:url" i]',
    'meta[property="twitter:image" i]',
    'meta[name="twitter:image" i]',
)

METADATA_FIELDS = ("title", "description", "canonical_url", "image_url", "site_name")


def _element_value(element: Tag) -> Optional[str]:
    if element.name == "meta":
        value = element.get("content")
    elif element.name == "link":
        value = element.get("href")
    else:
        value = element.get_text()
    if not isinstance(value, str):
        return None
    return collapse_whitespace(value) or None


def _first_value(soup: BeautifulSoup, selectors: Iterable[str]) -> Optional[str]:
    for selector in selectors:
        for element in soup.select(selector):
            value = _element_value(element)
            if value:
                return value
    return None


def _absolute_http_url(value: Optional[str], base_url: Optional[str]) -> Optional[str]:
    if not value:
        return None
    url = urljoin(base_url, value) if base_url else value
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return url


def parse_document(content: bytes, charset: Optional[str] = None) -> BeautifulSoup:
    if not content or not content.strip():
        raise MalformedMarkup("empty document")
    try:
        soup = BeautifulSoup(content, "html.parser", from_encoding=charset)
    except Exception as exc:
        raise MalformedMarkup(str(exc)) from exc
    if soup.find() is None:
        raise MalformedMarkup("document contains no markup")
    return soup


def extract_metadata(
    content: bytes,
    *,
    charset: Optional[str] = None,
    base_url: Optional[str] = None,
    hint: ExtractionHint = STANDARD_EXTRACTION,
) -> Metadata:
    """Return the page's title and Open Graph fields.

    ``charset`` comes from the HTTP ``Content-Type`` header; without it the
    document's own ``<meta charset>`` decides. Selectors from ``hint`` are
    tried before the standard ones for each field.

    Raises ``MalformedMarkup`` if the bytes are not a usable HTML document and
    ``NoMetadataFound`` if neither a title nor a description is present.
    """
    soup = parse_document(content, charset)

    title = _first_value(
        soup, (*hint.for_field("title"), *TITLE_SELECTORS, *TITLE_FALLBACK_SELECTORS)
    )
    description = _first_value(
        soup, (*hint.for_field("description"), *DESCRIPTION_SELECTORS)
    )
    site_name = _first_value(soup, (*hint.for_field("site_name"), *SITE_NAME_SELECTORS))
    canonical_url = _absolute_http_url(
        _first_value(soup, (*hint.for_field("canonical_url"), *URL_SELECTORS)), base_url
    )
    image_url = _absolute_http_url(
        _first_value(soup, (*hint.for_field("image_url"), *IMAGE_SELECTORS)), base_url
    )

    if not title and not description:
        raise NoMetadataFound(f"no title or description in {base_url or 'document'}")

    return Metadata(
        title=title,
        description=description,
        canonical_url=canonical_url,
        image_url=image_url,
        site_name=site_name,
    )
