"""In-memory store for pending authorization grants.

Grants are write-once and read-once: the callback and token steps pop
them atomically. Expired grants are treated as missing even before the
sweep removes them.

The store is process-local, which is fine for a single instance. For
several instances, implement CodeStore on top of a shared cache.
"""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

GRANT_TTL_SECONDS = 10 * 60


@dataclass(frozen=True)
class PendingGrant:
    client_id: str
    redirect_uri: str
    scope: str
    resource: str
    state: str
    code_challenge: Optional[str]
    code_challenge_method: Optional[str]
    created_at: float
    expires_at: float
    # Set once the provider callback has authenticated the user
    subject: Optional[str] = None
    email: Optional[str] = None
    provider: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.subject)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


def new_grant(
    client_id: str,
    redirect_uri: str,
    scope: str,
    resource: str,
    state: str = "",
    code_challenge: Optional[str] = None,
    code_challenge_method: Optional[str] = None,
    now: Optional[float] = None,
) -> PendingGrant:
    now = time.time() if now is None else now
    return PendingGrant(
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        resource=resource,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        created_at=now,
        expires_at=now + GRANT_TTL_SECONDS,
    )


class CodeStore(ABC):
    """Insert-with-TTL / atomic get-and-invalidate store for grants."""

    @abstractmethod
    def put(self, code: str, grant: PendingGrant) -> None: ...

    @abstractmethod
    def get(self, code: str) -> Optional[PendingGrant]: ...

    @abstractmethod
    def pop(self, code: str) -> Optional[PendingGrant]: ...

    @abstractmethod
    def purge_expired(self) -> int: ...


class InMemoryCodeStore(CodeStore):
    """Sharded dict of grants, one lock per shard."""

    def __init__(self, clock: Callable[[], float] = time.time, shards: int = 16, sweep_every: int = 100):
        self._clock = clock
        self._shards: list[dict[str, PendingGrant]] = [dict() for _ in range(shards)]
        self._locks = [threading.Lock() for _ in range(shards)]
        self._sweep_every = sweep_every
        self._writes = 0

    def _shard(self, code: str) -> int:
        return hash(code) % len(self._shards)

    def put(self, code: str, grant: PendingGrant) -> None:
        index = self._shard(code)
        with self._locks[index]:
            if code in self._shards[index]:
                raise KeyError("authorization code already issued")
            self._shards[index][code] = grant
            self._writes += 1
            sweep = self._writes % self._sweep_every == 0
        if sweep:
            self.purge_expired()

    def get(self, code: str) -> Optional[PendingGrant]:
        index = self._shard(code)
        with self._locks[index]:
            grant = self._shards[index].get(code)
        if grant is None or grant.is_expired(self._clock()):
            return None
        return grant

    def pop(self, code: str) -> Optional[PendingGrant]:
        index = self._shard(code)
        with self._locks[index]:
            grant = self._shards[index].pop(code, None)
        if grant is None or grant.is_expired(self._clock()):
            return None
        return grant

    def purge_expired(self) -> int:
        now = self._clock()
        removed = 0
        for index, shard in enumerate(self._shards):
            with self._locks[index]:
                for code in [c for c, g in shard.items() if g.is_expired(now)]:
                    del shard[code]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return sum(len(s) for s in self._shards)


_store: Optional[CodeStore] = None
_store_lock = threading.Lock()


def get_code_store() -> CodeStore:
    """Process-wide store, created on first use."""
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                _store = InMemoryCodeStore()
    return _store


def set_code_store(store: Optional[CodeStore]) -> None:
    """Replace the process-wide store (None resets to lazy default)."""
    global _store
    with _store_lock:
        _store = store
