"""Find previewable URLs in message bodies.

Plain-text scanning follows what Matrix clients linkify: a URL literal has no
whitespace and keeps ``()``, ``[]``, ``{}`` and ``<>`` balanced. Sentence
punctuation trailing the literal is not part of the URL.
"""

from __future__ import annotations

import logging
import re
from urllib.parse import urlsplit, urlunsplit

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

log = logging.getLogger(__name__)

# https://stackoverflow.com/a/417184/2557927
SAFE_URL_LENGTH = 2048
MAX_URLS_PER_MESSAGE = 10

_SCHEME_RE = re.compile(r"(?<![\w])https?:", re.IGNORECASE)
_OPENERS = {"(": ")", "[": "]", "{": "}", "<": ">"}
_CLOSERS = set(_OPENERS.values())
_TRAILING_PUNCTUATION = ".,;:!?'\""
_SKIPPED_TAGS = {"code", "pre", "del", "mx-reply"}
_IGNORED_HOSTS = {"matrix.to"}
_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str | None:
    """Canonical cache key for *url*, or None when it is not previewable.

    Lower-cases scheme and host, drops default ports and the fragment, and
    turns an empty path into ``/``.
    """
    if not url or len(url) > SAFE_URL_LENGTH:
        return None
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        return None
    host = parts.hostname
    if not host:
        return None
    if host in _IGNORED_HOSTS:
        return None

    netloc = f"[{host}]" if ":" in host else host
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    normalized = urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))
    if len(normalized) > SAFE_URL_LENGTH:
        return None
    return normalized


def _literal_end(text: str, start: int) -> int:
    expected: list[str] = []
    i = start
    while i < len(text):
        ch = text[i]
        if ch.isspace():
            break
        if ch in _OPENERS:
            expected.append(_OPENERS[ch])
        elif ch in _CLOSERS:
            if not expected or expected[-1] != ch:
                break
            expected.pop()
        i += 1
    while i > start and text[i - 1] in _TRAILING_PUNCTUATION:
        i -= 1
    return i


def scan_text(text: str) -> list[str]:
    """Return the raw URL literals found in *text*, in order."""
    found: list[str] = []
    pos = 0
    while True:
        match = _SCHEME_RE.search(text, pos)
        if not match:
            return found
        end = _literal_end(text, match.start())
        if end > match.end():
            found.append(text[match.start() : end])
        pos = max(end, match.end())


def _skip_reply_fallback(body: str) -> list[str]:
    lines = body.splitlines()
    i = 0
    while i < len(lines) and lines[i].startswith("> "):
        i += 1
    return lines[i:]


def _scan_html(formatted_body: str) -> list[str]:
    soup = BeautifulSoup(formatted_body, "html.parser")
    found: list[str] = []
    stack = list(reversed(list(soup.children)))
    while stack:
        node = stack.pop()
        if isinstance(node, Comment):
            continue
        if isinstance(node, NavigableString):
            found.extend(scan_text(str(node)))
            continue
        if not isinstance(node, Tag):
            continue
        if node.name in _SKIPPED_TAGS:
            continue
        href = node.get("href") if node.name == "a" else None
        if isinstance(href, str) and href:
            found.append(href)
            continue
        stack.extend(reversed(list(node.children)))
    return found


def extract_urls(
    body: str, formatted_body: str | None = None, limit: int = MAX_URLS_PER_MESSAGE
) -> list[str]:
    """Normalized, de-duplicated URLs to preview for a message.

    The HTML body wins when present since it carries explicit links. A body
    that cannot be parsed yields no URLs.
    """
    try:
        if formatted_body:
            raw = _scan_html(formatted_body)
        else:
            raw = []
            for line in _skip_reply_fallback(body or ""):
                raw.extend(scan_text(line))
    except Exception as exc:
        log.warning("Failed to scan message body for URLs: %s", exc)
        return []

    urls: list[str] = []
    seen: set[str] = set()
    for candidate in raw:
        url = normalize_url(candidate)
        if not url or url in seen:
            continue
        seen.add(url)
        urls.append(url)
        if len(urls) >= limit:
            break
    return urls
