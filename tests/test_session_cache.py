# =============================================================================
# Unit Tests — Analysis Session Cache
# =============================================================================
#
# Sessions hold MagicMock indices so eviction can be observed through
# close() calls. A settable fake clock drives TTL expiry.
# =============================================================================

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from finlens.errors import SessionNotFoundError
from finlens.services.session_cache import AnalysisSession, SessionCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _session(document_id: str) -> AnalysisSession:
    return AnalysisSession(
        document_id=document_id,
        lexical_index=MagicMock(),
        semantic_index=MagicMock(),
        company_name="Acme Corp",
    )


class TestSessionCache:
    """Tests for SessionCache."""

    def test_get_returns_stored_session(self):
        cache = SessionCache(max_entries=2, ttl_seconds=None)
        session = _session("doc-1")
        cache.set("doc-1", session)
        assert cache.get("doc-1") is session
        assert "doc-1" in cache
        assert len(cache) == 1

    def test_missing_key(self):
        assert SessionCache().get("nope") is None

    def test_least_recently_used_is_evicted_and_closed(self):
        cache = SessionCache(max_entries=2, ttl_seconds=None)
        first, second, third = _session("a"), _session("b"), _session("c")
        cache.set("a", first)
        cache.set("b", second)
        cache.get("a")  # "b" is now least recently used
        cache.set("c", third)

        assert "b" not in cache
        assert "a" in cache and "c" in cache
        second.semantic_index.close.assert_called_once()
        first.semantic_index.close.assert_not_called()

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = SessionCache(max_entries=2, ttl_seconds=60.0, clock=clock)
        session = _session("doc-1")
        cache.set("doc-1", session)

        clock.now = 59.0
        assert cache.get("doc-1") is session

        clock.now = 61.0
        assert cache.get("doc-1") is None
        assert "doc-1" not in cache
        session.semantic_index.close.assert_called_once()

    def test_replacing_closes_previous_session(self):
        cache = SessionCache(max_entries=2, ttl_seconds=None)
        old, new = _session("doc-1"), _session("doc-1")
        cache.set("doc-1", old)
        cache.set("doc-1", new)
        assert cache.get("doc-1") is new
        old.semantic_index.close.assert_called_once()
        new.semantic_index.close.assert_not_called()

    def test_setting_same_session_twice_keeps_it_open(self):
        cache = SessionCache(max_entries=2, ttl_seconds=None)
        session = _session("doc-1")
        cache.set("doc-1", session)
        cache.set("doc-1", session)
        session.semantic_index.close.assert_not_called()

    def test_evict(self):
        cache = SessionCache(ttl_seconds=None)
        session = _session("doc-1")
        cache.set("doc-1", session)
        assert cache.evict("doc-1") is True
        assert cache.evict("doc-1") is False
        session.semantic_index.close.assert_called_once()

    def test_clear_closes_everything(self):
        cache = SessionCache(ttl_seconds=None)
        sessions = [_session(f"doc-{i}") for i in range(3)]
        for session in sessions:
            cache.set(session.document_id, session)
        cache.clear()
        assert len(cache) == 0
        for session in sessions:
            session.semantic_index.close.assert_called_once()

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            SessionCache(max_entries=0)


# ---------------------------------------------------------------------------
# Test: Leases
# ---------------------------------------------------------------------------


class TestLease:
    """A leased session outlives its eviction until the lease ends."""

    def test_lease_yields_cached_session(self):
        cache = SessionCache(ttl_seconds=None)
        session = _session("doc-1")
        cache.set("doc-1", session)
        with cache.lease("doc-1") as leased:
            assert leased is session

    def test_missing_session(self):
        with pytest.raises(SessionNotFoundError):
            with SessionCache().lease("nope"):
                pass

    def test_lru_eviction_waits_for_release(self):
        cache = SessionCache(max_entries=1, ttl_seconds=None)
        held = _session("doc-a")
        cache.set("doc-a", held)

        with cache.lease("doc-a"):
            cache.set("doc-b", _session("doc-b"))
            assert "doc-a" not in cache
            held.semantic_index.close.assert_not_called()

        held.semantic_index.close.assert_called_once()

    def test_replacement_waits_for_release(self):
        cache = SessionCache(ttl_seconds=None)
        old, new = _session("doc-1"), _session("doc-1")
        cache.set("doc-1", old)

        with cache.lease("doc-1"):
            cache.set("doc-1", new)
            assert cache.get("doc-1") is new
            old.semantic_index.close.assert_not_called()

        old.semantic_index.close.assert_called_once()
        new.semantic_index.close.assert_not_called()

    def test_closed_after_last_of_several_leases(self):
        cache = SessionCache(ttl_seconds=None)
        session = _session("doc-1")
        cache.set("doc-1", session)

        with cache.lease("doc-1"):
            with cache.lease("doc-1"):
                cache.evict("doc-1")
            session.semantic_index.close.assert_not_called()

        session.semantic_index.close.assert_called_once()

    def test_release_after_error_still_closes(self):
        cache = SessionCache(ttl_seconds=None)
        session = _session("doc-1")
        cache.set("doc-1", session)

        with pytest.raises(RuntimeError):
            with cache.lease("doc-1"):
                cache.clear()
                raise RuntimeError("request failed")

        session.semantic_index.close.assert_called_once()

    def test_unevicted_session_stays_open_after_release(self):
        cache = SessionCache(ttl_seconds=None)
        session = _session("doc-1")
        cache.set("doc-1", session)
        with cache.lease("doc-1"):
            pass
        assert cache.get("doc-1") is session
        session.semantic_index.close.assert_not_called()

    def test_expired_session_cannot_be_leased(self):
        clock = FakeClock()
        cache = SessionCache(ttl_seconds=60.0, clock=clock)
        session = _session("doc-1")
        cache.set("doc-1", session)

        clock.now = 61.0
        with pytest.raises(SessionNotFoundError):
            with cache.lease("doc-1"):
                pass
        session.semantic_index.close.assert_called_once()
