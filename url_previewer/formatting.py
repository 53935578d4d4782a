"""Render previews as a Matrix ``m.notice`` with an HTML blockquote per URL."""

from __future__ import annotations

import html
from typing import Any, Iterable
from urllib.parse import quote

from .models import ChainKey, Preview
from .utils import collapse_whitespace, limit_chars

LINK_EMOJI = "\U0001f517\ufe0f"


def event_permalink(key: ChainKey) -> str:
    return f"https://matrix.to/#/{quote(key.room_id, safe='')}/{quote(key.event_id, safe='')}"


def _clean(value: str | None, max_chars: int) -> str:
    return limit_chars(collapse_whitespace(value or ""), max_chars)


def render_preview(preview: Preview, backref: str, max_chars: int) -> tuple[str, str]:
    """Return ``(plain, html)`` for one preview."""
    meta = preview.metadata
    title = _clean(meta.title, max_chars)
    site_name = _clean(meta.site_name, max_chars)
    description = _clean(meta.description, max_chars)
    link = meta.canonical_url or preview.url

    headline = (
        f'<a href="{html.escape(backref)}">{LINK_EMOJI}</a> '
        f'<strong><a href="{html.escape(link)}">'
        f"{html.escape(title or link)}</a></strong>"
    )
    plain = title or link
    if site_name:
        plain += f" – {site_name}"
        headline += f" – <span>{html.escape(site_name)}</span>"

    formatted = f"<blockquote><div>{headline}</div>"
    if description:
        plain += f"\n> {description}"
        formatted += f"<div>{html.escape(description)}</div>"
    formatted += "</blockquote>"
    return plain, formatted


def build_preview_content(
    key: ChainKey, previews: Iterable[Preview], max_chars: int = 300
) -> dict[str, Any]:
    """Message content for a preview reply. Mentions are always empty so nobody is pinged."""
    backref = event_permalink(key)
    plain_parts: list[str] = []
    html_parts: list[str] = []
    for preview in previews:
        plain, formatted = render_preview(preview, backref, max_chars)
        plain_parts.append(plain)
        html_parts.append(formatted)
    return {
        "msgtype": "m.notice",
        "body": "\n\n".join(plain_parts),
        "format": "org.matrix.custom.html",
        "formatted_body": "".join(html_parts),
        "m.mentions": {},
    }
