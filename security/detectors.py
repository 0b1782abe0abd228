"""Heuristic request classifiers used by the security gate.

- Bot detection: user-agent signatures, with benign categories exempted
- Shield: attack signatures in the request path and query string
"""

import re
from enum import Enum
from typing import Iterable, Optional
from urllib.parse import unquote


class BotCategory(str, Enum):
    SEARCH_ENGINE = "SEARCH_ENGINE"
    PREVIEW = "PREVIEW"
    MONITOR = "MONITOR"
    AUTOMATED = "AUTOMATED"


# Checked in order; first match wins.
_CATEGORY_SIGNATURES: list[tuple[BotCategory, re.Pattern]] = [
    (BotCategory.SEARCH_ENGINE, re.compile(
        r"googlebot|bingbot|duckduckbot|yandex(bot)?|baiduspider|applebot|slurp", re.I)),
    (BotCategory.PREVIEW, re.compile(
        r"slackbot|twitterbot|facebookexternalhit|discordbot|linkedinbot|telegrambot|whatsapp", re.I)),
    (BotCategory.MONITOR, re.compile(
        r"uptimerobot|pingdom|statuscake|better ?uptime|datadog.*synthetics|site24x7", re.I)),
    (BotCategory.AUTOMATED, re.compile(
        r"bot\b|crawl|spider|scrap|headlesschrome|phantomjs|selenium|puppeteer|playwright", re.I)),
]

DEFAULT_ALLOWED_BOTS = frozenset({
    BotCategory.SEARCH_ENGINE,
    BotCategory.PREVIEW,
    BotCategory.MONITOR,
})


def categorize_user_agent(user_agent: Optional[str]) -> Optional[BotCategory]:
    """Return the bot category of a user agent, or None for regular clients."""
    if not user_agent:
        return None
    for category, pattern in _CATEGORY_SIGNATURES:
        if pattern.search(user_agent):
            return category
    return None


def is_denied_bot(
    user_agent: Optional[str],
    allow: Iterable[BotCategory] = DEFAULT_ALLOWED_BOTS,
) -> bool:
    category = categorize_user_agent(user_agent)
    return category is not None and category not in set(allow)


_SHIELD_SIGNATURES = [
    re.compile(r"\.\.[/\\]"),                                   # path traversal
    re.compile(r"/etc/(passwd|shadow)|boot\.ini|win\.ini", re.I),
    re.compile(r"\bunion\b[\s+]+(all[\s+]+)?\bselect\b", re.I),  # SQL injection
    re.compile(r"'\s*or\s*'?\d+'?\s*=\s*'?\d+", re.I),
    re.compile(r";\s*(drop|delete|truncate)\s+table", re.I),
    re.compile(r"<\s*script\b|javascript:|on(error|load)\s*=", re.I),  # XSS
    re.compile(r"[;|`]\s*(cat|rm|wget|curl|nc|bash|sh)\b", re.I),      # command injection
    re.compile(r"\$\{jndi:", re.I),
    re.compile(r"\x00"),
]


def shield_match(path: str, query: str = "") -> bool:
    """Check a request target against known attack signatures."""
    target = unquote(unquote(f"{path}?{query}" if query else path))
    return any(pattern.search(target) for pattern in _SHIELD_SIGNATURES)
