"""Security gate: admission control for every externally reachable endpoint.

Each request is classified before any other processing:
- shield: attack signatures in the request target
- bot: automated clients outside the allowed categories
- rate_limit: token bucket per client IP

Gates run in LIVE mode (deny) or DRY_RUN mode (log only).
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from security.detectors import DEFAULT_ALLOWED_BOTS, BotCategory, is_denied_bot, shield_match

logger = logging.getLogger(__name__)

LIVE = "LIVE"
DRY_RUN = "DRY_RUN"


class Verdict(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


class DenyReason(str, Enum):
    NONE = "none"
    RATE_LIMIT = "rate_limit"
    BOT = "bot"
    SHIELD = "shield"


@dataclass(frozen=True)
class SecurityDecision:
    verdict: Verdict
    reason: DenyReason = DenyReason.NONE
    reset_time: Optional[float] = None  # monotonic seconds, rate_limit only

    @property
    def denied(self) -> bool:
        return self.verdict == Verdict.DENY

    def retry_after(self, now: float) -> Optional[int]:
        """Seconds the client should wait before retrying (at least 1).

        None when waiting will not help (cost above bucket capacity).
        """
        if self.reset_time is None:
            return None
        return max(1, math.ceil(self.reset_time - now))


ALLOWED = SecurityDecision(Verdict.ALLOW)


@dataclass(frozen=True)
class GateProfile:
    name: str
    refill_rate: float       # tokens added per interval
    interval: float          # seconds
    capacity: float
    shield: bool = False
    detect_bots: bool = False
    allowed_bots: frozenset = field(default=DEFAULT_ALLOWED_BOTS)


def build_profiles(production: bool) -> dict[str, GateProfile]:
    """Gate profiles for the MCP resource, the OAuth flow and discovery."""
    if production:
        return {
            "mcp": GateProfile("mcp", 30, 60, 50, shield=True, detect_bots=True),
            "oauth": GateProfile("oauth", 60, 60, 100, shield=True),
            "discovery": GateProfile("discovery", 120, 60, 150),
        }
    return {
        "mcp": GateProfile("mcp", 100, 60, 200, shield=True, detect_bots=True),
        "oauth": GateProfile("oauth", 100, 60, 200, shield=True),
        "discovery": GateProfile("discovery", 200, 60, 300),
    }


class _Bucket:
    __slots__ = ("tokens", "updated")

    def __init__(self, tokens: float, updated: float):
        self.tokens = tokens
        self.updated = updated


class TokenBucketLimiter:
    """Token buckets keyed by a caller-supplied characteristic (client IP).

    The bucket map is split into shards, each with its own lock, so
    requests from different clients rarely contend.
    """

    def __init__(
        self,
        refill_rate: float,
        interval: float,
        capacity: float,
        clock: Callable[[], float] = time.monotonic,
        shards: int = 16,
        max_idle_keys: int = 10000,
    ):
        self.rate = refill_rate / interval  # tokens per second
        self.capacity = capacity
        self._clock = clock
        self._shards = [dict() for _ in range(shards)]
        self._locks = [threading.Lock() for _ in range(shards)]
        self._max_idle_keys = max_idle_keys

    def _refill(self, bucket: _Bucket, now: float) -> None:
        elapsed = max(0.0, now - bucket.updated)
        bucket.tokens = min(self.capacity, bucket.tokens + elapsed * self.rate)
        bucket.updated = now

    def consume(self, key: str, cost: float = 1) -> tuple[bool, Optional[float]]:
        """Take `cost` tokens for `key`.

        Returns (allowed, reset_time); reset_time is the monotonic instant
        at which `cost` tokens will be available again. A cost of 0 checks
        that a token is available without spending it.
        """
        needed = cost if cost > 0 else 1
        index = hash(key) % len(self._shards)
        with self._locks[index]:
            buckets = self._shards[index]
            now = self._clock()
            bucket = buckets.get(key)
            if bucket is None:
                if len(buckets) >= self._max_idle_keys:
                    self._sweep(buckets, now)
                bucket = buckets[key] = _Bucket(self.capacity, now)
            else:
                self._refill(bucket, now)

            if bucket.tokens >= needed:
                bucket.tokens -= cost
                return True, None

            if needed > self.capacity:
                return False, None
            return False, now + (needed - bucket.tokens) / self.rate

    def _sweep(self, buckets: dict, now: float) -> None:
        """Drop buckets that have refilled completely."""
        for key in list(buckets):
            bucket = buckets[key]
            self._refill(bucket, now)
            if bucket.tokens >= self.capacity:
                del buckets[key]

    def __len__(self) -> int:
        return sum(len(b) for b in self._shards)


class SecurityGate:
    """Classify requests as allowed or denied for one gate profile."""

    def __init__(
        self,
        profile: GateProfile,
        mode: str = LIVE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.profile = profile
        self.mode = mode.upper()
        self.clock = clock
        self.limiter = TokenBucketLimiter(
            profile.refill_rate, profile.interval, profile.capacity, clock=clock
        )

    def evaluate(
        self,
        client_ip: str,
        path: str,
        cost: float = 1,
        user_agent: str = "",
        query: str = "",
    ) -> SecurityDecision:
        decision = self._classify(client_ip, path, cost, user_agent, query)

        if decision.denied:
            logger.warning(
                f"[SECURITY] {self.profile.name} gate deny ({decision.reason.value}) "
                f"ip={client_ip} path={path} mode={self.mode}"
            )
            if self.mode == DRY_RUN:
                return ALLOWED
        else:
            logger.debug(f"[SECURITY] {self.profile.name} gate allow ip={client_ip} path={path}")
        return decision

    def _classify(self, client_ip, path, cost, user_agent, query) -> SecurityDecision:
        if self.profile.shield and shield_match(path, query):
            return SecurityDecision(Verdict.DENY, DenyReason.SHIELD)

        if self.profile.detect_bots and is_denied_bot(user_agent, self.profile.allowed_bots):
            return SecurityDecision(Verdict.DENY, DenyReason.BOT)

        allowed, reset_time = self.limiter.consume(client_ip or "unknown", cost)
        if not allowed:
            return SecurityDecision(Verdict.DENY, DenyReason.RATE_LIMIT, reset_time)
        return ALLOWED

    def protect(self, request, cost: float = 1) -> SecurityDecision:
        """Evaluate a Starlette request."""
        return self.evaluate(
            client_ip(request),
            request.url.path,
            cost=cost,
            user_agent=request.headers.get("user-agent", ""),
            query=request.url.query,
        )


def client_ip(request) -> str:
    """The socket peer address.

    Forwarded headers are not read here. Behind a reverse proxy,
    ProxyHeadersMiddleware rewrites the peer from X-Forwarded-For, and
    only for proxies listed in FORWARDED_ALLOW_IPS.
    """
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def build_gates(production: bool, mode: str, clock: Callable[[], float] = time.monotonic) -> dict[str, SecurityGate]:
    return {
        name: SecurityGate(profile, mode=mode, clock=clock)
        for name, profile in build_profiles(production).items()
    }


__all__ = [
    "ALLOWED",
    "BotCategory",
    "DenyReason",
    "GateProfile",
    "SecurityDecision",
    "SecurityGate",
    "TokenBucketLimiter",
    "Verdict",
    "build_gates",
    "build_profiles",
    "client_ip",
]
