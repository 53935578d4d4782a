import re
import tomllib
from typing import Any, Iterable

from deepmerge import always_merger

DEFAULT_CONFIG_PATH = "default.config.toml"
USER_CONFIG_PATH = "user.config.toml"

# https://developer.mozilla.org/en-US/docs/Glossary/Whitespace
_WHITESPACE_RE = re.compile(r"[\t\n\x0c\r ]+")


def get_config(
    default_path: str = DEFAULT_CONFIG_PATH, user_path: str = USER_CONFIG_PATH
) -> dict:
    with open(default_path, "rb") as f:
        config = tomllib.load(f)
    try:
        with open(user_path, "rb") as f:
            overrides = tomllib.load(f)
    except FileNotFoundError:
        overrides = {}

    config = always_merger.merge(config, overrides)
    return config


def normalize_id(value: Any) -> str | None:
    """Return a stripped string form of a room/user id, or None for junk values."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def normalize_id_set(values: Iterable[Any] | None) -> set[str]:
    if not values:
        return set()
    out: set[str] = set()
    for value in values:
        normalized = normalize_id(value)
        if normalized:
            out.add(normalized)
    return out


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def limit_chars(text: str, max_chars: int) -> str:
    """
    Truncate *text* to at most *max_chars* characters, ending with an ellipsis
    when anything was cut off.
    """
    if not text or len(text) <= max_chars:
        return text
    if max_chars <= 1:
        return "…"
    return text[: max_chars - 1].rstrip() + "…"
