"""Host-pattern rules that redirect preview fetches.

Some sites serve client-rendered pages with nothing useful in their markup.
A rule can point the fetch at an alternate target (a regex substitution on
the full URL) and/or supply extra CSS selectors for extraction.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from .extract_urls import normalize_url
from .metadata import METADATA_FIELDS
from .models import STANDARD_EXTRACTION, ExtractionHint, FetchSpec

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RewriteRule:
    host: str
    pattern: Optional[re.Pattern] = None
    replacement: str = ""
    hint: ExtractionHint = STANDARD_EXTRACTION

    @property
    def specificity(self) -> tuple[int, int]:
        if self.host == "*":
            return (0, 0)
        labels = self.host.count(".") + 1
        if self.host.startswith("*."):
            return (1, labels - 1)
        return (2, labels)

    def matches_host(self, host: str) -> bool:
        if self.host == "*":
            return True
        if self.host.startswith("*."):
            suffix = self.host[2:]
            return host == suffix or host.endswith("." + suffix)
        return host == self.host


def _validate_selectors(selectors: Iterable[str]) -> tuple[str, ...]:
    probe = BeautifulSoup("", "html.parser")
    checked = []
    for selector in selectors:
        try:
            probe.select(selector)
        except Exception as exc:
            raise ValueError(f"Invalid extraction selector {selector!r}: {exc}") from exc
        checked.append(selector)
    return tuple(checked)


def build_rule(raw: dict) -> RewriteRule:
    """Compile one ``[[rewrite]]`` config table into a rule.

    Raises ``ValueError`` for a missing host, a bad regex, an unknown
    extraction field or an invalid selector, so mistakes surface at startup.
    """
    host = str(raw.get("host", "")).strip().lower()
    if not host:
        raise ValueError(f"Rewrite rule without host: {raw!r}")

    pattern = None
    raw_pattern = raw.get("pattern")
    if raw_pattern:
        try:
            pattern = re.compile(raw_pattern)
        except re.error as exc:
            raise ValueError(f"Invalid rewrite pattern {raw_pattern!r}: {exc}") from exc

    selectors: dict[str, tuple[str, ...]] = {}
    for field_name, values in (raw.get("extract") or {}).items():
        if field_name not in METADATA_FIELDS:
            raise ValueError(f"Unknown extraction field {field_name!r} for host {host}")
        if isinstance(values, str):
            values = [values]
        selectors[field_name] = _validate_selectors(values)

    return RewriteRule(
        host=host,
        pattern=pattern,
        replacement=str(raw.get("replacement", "")),
        hint=ExtractionHint(selectors) if selectors else STANDARD_EXTRACTION,
    )


def build_rules(rules_config: Iterable[dict]) -> list[RewriteRule]:
    return [build_rule(raw) for raw in rules_config if raw.get("enabled", True)]


class RewriteEngine:
    """Resolves a URL to the ``FetchSpec`` actually fetched. Most specific host wins."""

    def __init__(self, rules: Iterable[RewriteRule] = ()) -> None:
        # sorted() is stable, so equally specific rules keep config order
        self._rules = sorted(rules, key=lambda rule: rule.specificity, reverse=True)

    def resolve(self, url: str) -> FetchSpec:
        host = (urlsplit(url).hostname or "").lower()
        for rule in self._rules:
            if not rule.matches_host(host):
                continue
            if rule.pattern is None:
                return FetchSpec(target_url=url, hint=rule.hint)

            rewritten, count = rule.pattern.subn(rule.replacement, url)
            if not count:
                continue
            target = normalize_url(rewritten)
            if target is None:
                log.error(
                    "URL rewrite produced an unusable URL: %s => %s", url, rewritten
                )
                return FetchSpec(target_url=url)
            log.debug("URL rewrite: %s => %s => %s", url, rule.pattern.pattern, target)
            return FetchSpec(target_url=target, hint=rule.hint)
        return FetchSpec(target_url=url)
