"""Redirect URI allow-list for OAuth clients.

OAuth 2.1 forbids wildcard redirect URIs. CLI and editor clients still
need ephemeral loopback ports, so instead of wildcards we accept a small
closed set of URI shapes. Anything that does not classify is rejected.
"""

import re
from enum import Enum
from typing import Optional


class RedirectUriKind(str, Enum):
    FIXED = "fixed"
    LOOPBACK_ROOT = "loopback_root"                       # dynamic-port desktop/CLI clients
    LOOPBACK_OAUTH_CALLBACK = "loopback_oauth_callback"   # mcp-remote style proxies
    LOOPBACK_LOCAL_DEV = "loopback_local_dev"             # local web development
    EDITOR_DEEP_LINK = "editor_deep_link"                 # VS Code stable / insiders


FIXED_REDIRECT_URIS = frozenset({
    "http://127.0.0.1:3334/oauth/callback",
    "http://localhost:3334/oauth/callback",
    "http://127.0.0.1:33418/",
    "http://localhost:33418/",
    "http://localhost:3000/api/auth/callback",
    "http://127.0.0.1:3000/api/auth/callback",
})

_LOOPBACK = r"http://(?:127\.0\.0\.1|localhost):(?P<port>\d{1,5})"

_SHAPES: list[tuple[RedirectUriKind, re.Pattern]] = [
    (RedirectUriKind.LOOPBACK_ROOT, re.compile(rf"{_LOOPBACK}/?")),
    (RedirectUriKind.LOOPBACK_OAUTH_CALLBACK, re.compile(rf"{_LOOPBACK}/oauth/callback")),
    (RedirectUriKind.LOOPBACK_LOCAL_DEV, re.compile(rf"{_LOOPBACK}/api/auth/callback")),
    (RedirectUriKind.EDITOR_DEEP_LINK, re.compile(
        r"vscode(?:-insiders)?://[A-Za-z0-9][A-Za-z0-9.\-]*(?:/[^\s#?]*)?(?:\?[^\s#]*)?")),
]


def classify(redirect_uri: Optional[str]) -> Optional[RedirectUriKind]:
    """Return the kind of an acceptable redirect URI, or None."""
    if not redirect_uri or not isinstance(redirect_uri, str):
        return None

    if redirect_uri in FIXED_REDIRECT_URIS:
        return RedirectUriKind.FIXED

    for kind, pattern in _SHAPES:
        match = pattern.fullmatch(redirect_uri)
        if not match:
            continue
        port = match.groupdict().get("port")
        if port is not None and not 0 < int(port) <= 65535:
            return None
        return kind
    return None


def is_valid(redirect_uri: Optional[str]) -> bool:
    return classify(redirect_uri) is not None
