"""Pending grant store."""

import threading

import pytest

from conftest import FakeClock
from oauth import stores
from oauth.stores import GRANT_TTL_SECONDS, InMemoryCodeStore, new_grant


def make_grant(clock, **overrides):
    fields = dict(
        client_id="client",
        redirect_uri="http://127.0.0.1:9999/",
        scope="openid",
        resource="https://broker.example.com/api/mcp",
        state="xyz",
        code_challenge=None,
        code_challenge_method=None,
        now=clock(),
    )
    fields.update(overrides)
    return new_grant(**fields)


class TestInMemoryCodeStore:
    def test_put_then_get(self, clock):
        store = InMemoryCodeStore(clock=clock)
        grant = make_grant(clock)
        store.put("code-1", grant)

        assert store.get("code-1") == grant
        # get does not consume
        assert store.get("code-1") == grant
        assert len(store) == 1

    def test_pop_is_single_use(self, clock):
        store = InMemoryCodeStore(clock=clock)
        store.put("code-1", make_grant(clock))

        assert store.pop("code-1") is not None
        assert store.pop("code-1") is None
        assert store.get("code-1") is None

    def test_expired_grant_is_missing_before_sweep(self, clock):
        store = InMemoryCodeStore(clock=clock)
        store.put("code-1", make_grant(clock))

        clock.advance(GRANT_TTL_SECONDS)
        assert store.get("code-1") is None
        assert store.pop("code-1") is None

    def test_grant_valid_until_expiry(self, clock):
        store = InMemoryCodeStore(clock=clock)
        store.put("code-1", make_grant(clock))

        clock.advance(GRANT_TTL_SECONDS - 1)
        assert store.get("code-1") is not None

    def test_duplicate_code_rejected(self, clock):
        store = InMemoryCodeStore(clock=clock)
        store.put("code-1", make_grant(clock))

        with pytest.raises(KeyError):
            store.put("code-1", make_grant(clock, client_id="other"))
        assert store.get("code-1").client_id == "client"

    def test_purge_expired(self, clock):
        store = InMemoryCodeStore(clock=clock)
        store.put("old", make_grant(clock))
        clock.advance(GRANT_TTL_SECONDS + 1)
        store.put("new", make_grant(clock))

        assert store.purge_expired() == 1
        assert len(store) == 1
        assert store.get("new") is not None

    def test_periodic_sweep_on_write(self, clock):
        store = InMemoryCodeStore(clock=clock, sweep_every=3)
        store.put("a", make_grant(clock))
        store.put("b", make_grant(clock))
        clock.advance(GRANT_TTL_SECONDS + 1)
        store.put("c", make_grant(clock))

        assert len(store) == 1

    def test_concurrent_pop_returns_grant_once(self, clock):
        store = InMemoryCodeStore(clock=clock)
        store.put("shared", make_grant(clock))
        results = []

        def worker():
            results.append(store.pop("shared"))

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r is not None) == 1


class TestPendingGrant:
    def test_authenticated_only_with_subject(self):
        clock = FakeClock(1000.0)
        grant = make_grant(clock)
        assert not grant.authenticated
        assert grant.expires_at == 1000.0 + GRANT_TTL_SECONDS

    def test_is_expired_boundary(self):
        grant = make_grant(FakeClock(0.0))
        assert not grant.is_expired(GRANT_TTL_SECONDS - 0.001)
        assert grant.is_expired(GRANT_TTL_SECONDS)


class TestProcessStore:
    def test_lazy_singleton(self):
        stores.set_code_store(None)
        try:
            first = stores.get_code_store()
            assert isinstance(first, InMemoryCodeStore)
            assert stores.get_code_store() is first
        finally:
            stores.set_code_store(None)

    def test_replace_store(self, clock):
        custom = InMemoryCodeStore(clock=clock)
        stores.set_code_store(custom)
        try:
            assert stores.get_code_store() is custom
        finally:
            stores.set_code_store(None)
