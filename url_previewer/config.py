"""Typed snapshot of the ``[previewer]``, ``[crawler]`` and ``[[rewrite]]`` config.

Parsing stays in :func:`utils.get_config`; this module only gives the merged
dict a fixed shape with defaults, loaded once at startup and never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .rewrite import RewriteRule, build_rule, build_rules
from .utils import normalize_id_set

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (compatible; Matrix-URL-Previewer-Bot; "
    "like Discordbot, TelegramBot, Twitterbot)"
)


@dataclass(frozen=True)
class CrawlerConfig:
    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = "en-US,en;q=0.9"
    proxy: str = ""
    timeout_seconds: float = 10.0
    max_body_bytes: int = 10 * 1024 * 1024
    max_redirects: int = 5
    max_concurrent_fetches: int = 8


@dataclass(frozen=True)
class PreviewerConfig:
    min_refetch_interval: float = 3600.0
    failure_ttl: float = 300.0
    cache_entries: int = 4096
    max_chains: int = 10000
    max_previews_per_message: int = 3
    max_text_chars: int = 300
    ignored_users: frozenset[str] = frozenset()
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    rewrite_rules: tuple[RewriteRule, ...] = ()

    @classmethod
    def from_dict(cls, cfg: dict) -> "PreviewerConfig":
        previewer = cfg.get("previewer", {}) or {}
        crawler = cfg.get("crawler", {}) or {}
        defaults = CrawlerConfig()

        rules = build_rules(cfg.get("rewrite", []) or [])
        # Bare [from, to] regex pairs apply to every host.
        for pair in cfg.get("rewrite_url", []) or []:
            source, target = pair
            rules.append(build_rule({"host": "*", "pattern": source, "replacement": target}))

        failure_ttl = float(previewer.get("failure_ttl_seconds", cls.failure_ttl))
        min_refetch = float(
            previewer.get("min_refetch_interval_seconds", cls.min_refetch_interval)
        )
        if failure_ttl > min_refetch:
            raise ValueError("failure_ttl_seconds must not exceed min_refetch_interval_seconds")

        return cls(
            min_refetch_interval=min_refetch,
            failure_ttl=failure_ttl,
            cache_entries=int(previewer.get("cache_entries", cls.cache_entries)),
            max_chains=int(previewer.get("max_chains", cls.max_chains)),
            max_previews_per_message=int(
                previewer.get("max_previews_per_message", cls.max_previews_per_message)
            ),
            max_text_chars=int(previewer.get("max_text_chars", cls.max_text_chars)),
            ignored_users=frozenset(normalize_id_set(previewer.get("ignored_users"))),
            crawler=CrawlerConfig(
                user_agent=crawler.get("user_agent") or defaults.user_agent,
                accept_language=crawler.get("accept_language") or defaults.accept_language,
                proxy=crawler.get("proxy", "") or "",
                timeout_seconds=float(
                    crawler.get("timeout_seconds", defaults.timeout_seconds)
                ),
                max_body_bytes=int(crawler.get("max_body_bytes", defaults.max_body_bytes)),
                max_redirects=int(crawler.get("max_redirects", defaults.max_redirects)),
                max_concurrent_fetches=int(
                    crawler.get("max_concurrent_fetches", defaults.max_concurrent_fetches)
                ),
            ),
            rewrite_rules=tuple(rules),
        )
