# =============================================================================
# Analysis Session Cache — bounded LRU + TTL
# =============================================================================
#
# Holds the {lexical index, semantic index} pair built by a report run so
# that later Q&A calls for the same document can reuse it.
#
# DESIGN DECISION: Bounded, not a bare dict. Every session owns a Chroma
# collection with one embedding per chunk; an unbounded map grows with
# every upload. Entries are evicted when:
#   - the cache holds more than max_entries (least recently used goes), or
#   - an entry is read after ttl_seconds since it was stored.
# Evicted sessions are closed, which drops their Chroma collection.
#
# DESIGN DECISION: Q&A requests lease their session (`with cache.lease(id)`).
# A session evicted while leased is parked and closed when the last lease
# ends; closing it at once would drop the collection under a running query.
#
# DESIGN DECISION: threading.Lock around every operation. The cache is
# process-wide shared state; a lock makes get/set/evict linearizable per
# key even if a caller drives the pipeline from worker threads. Nothing
# awaits while holding it.
#
# DESIGN DECISION: Only the report orchestrator writes, and only after the
# whole pipeline succeeded. A failed run never leaves a half-built session.
# =============================================================================

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import lru_cache

from finlens.config import settings
from finlens.errors import SessionNotFoundError
from finlens.services.bm25 import BM25Index
from finlens.services.vectorstore import SemanticIndex

logger = logging.getLogger(__name__)


@dataclass
class AnalysisSession:
    """Index pair plus the facts Q&A needs about the analysed document."""

    document_id: str
    lexical_index: BM25Index
    semantic_index: SemanticIndex
    document_type: str = "unknown"
    company_name: str = "Unknown Company"
    created_at: float = field(default_factory=time.monotonic)

    def close(self) -> None:
        self.semantic_index.close()


class SessionCache:
    """Thread-safe LRU cache of AnalysisSession keyed by document id."""

    def __init__(
        self,
        max_entries: int = 16,
        ttl_seconds: float | None = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[AnalysisSession, float]] = OrderedDict()
        # Active leases per session object, and leased sessions that were
        # evicted and wait for their last lease to end before closing
        self._leases: dict[int, int] = {}
        self._retired: dict[int, AnalysisSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, document_id: object) -> bool:
        with self._lock:
            return document_id in self._entries

    def get(self, document_id: str) -> AnalysisSession | None:
        """Return the session and mark it recently used, or None."""
        with self._lock:
            session, to_close = self._lookup(document_id)
        self._close_all(to_close)
        return session

    @contextmanager
    def lease(self, document_id: str) -> Iterator[AnalysisSession]:
        """
        Hold a session for the length of a request.

        A session evicted or replaced while leased stays open until its
        last lease ends, so an in-flight question never loses its index.

        Raises:
            SessionNotFoundError: Nothing is cached for `document_id`.
        """
        with self._lock:
            session, to_close = self._lookup(document_id)
            if session is not None:
                key = id(session)
                self._leases[key] = self._leases.get(key, 0) + 1
        self._close_all(to_close)
        if session is None:
            raise SessionNotFoundError(document_id)

        try:
            yield session
        finally:
            self._release(session)

    def set(self, document_id: str, session: AnalysisSession) -> None:
        """Store (or replace) a session, evicting the LRU entry if full."""
        evicted: list[tuple[str, AnalysisSession]] = []
        with self._lock:
            previous = self._entries.pop(document_id, None)
            if previous is not None and previous[0] is not session:
                evicted.append((document_id, previous[0]))

            self._entries[document_id] = (session, self._clock())
            while len(self._entries) > self._max_entries:
                key, (old, _) = self._entries.popitem(last=False)
                evicted.append((key, old))

            for key, _ in evicted:
                logger.info("Evicting session for '%s'", key)
            to_close = self._retire([old for _, old in evicted])

        self._close_all(to_close)
        logger.info(
            "Cached session for '%s' (%d/%d entries)",
            document_id, len(self), self._max_entries,
        )

    def evict(self, document_id: str) -> bool:
        """Drop a session. Returns False if it was not cached."""
        with self._lock:
            entry = self._entries.pop(document_id, None)
            if entry is None:
                return False
            to_close = self._retire([entry[0]])
        self._close_all(to_close)
        logger.info("Evicted session for '%s'", document_id)
        return True

    def clear(self) -> None:
        with self._lock:
            sessions = [session for session, _ in self._entries.values()]
            self._entries.clear()
            to_close = self._retire(sessions)
        self._close_all(to_close)

    # -------------------------------------------------------------------------
    # Internal Helpers (call with the lock held, except _close_all)
    # -------------------------------------------------------------------------

    def _lookup(
        self, document_id: str,
    ) -> tuple[AnalysisSession | None, list[AnalysisSession]]:
        entry = self._entries.get(document_id)
        if entry is None:
            return None, []

        session, stored_at = entry
        if self._ttl is not None and self._clock() - stored_at > self._ttl:
            del self._entries[document_id]
            logger.info("Session for '%s' expired", document_id)
            return None, self._retire([session])

        self._entries.move_to_end(document_id)
        return session, []

    def _retire(self, sessions: list[AnalysisSession]) -> list[AnalysisSession]:
        """Sessions to close now; leased ones are parked until released."""
        to_close = []
        for session in sessions:
            if self._leases.get(id(session)):
                self._retired[id(session)] = session
            else:
                to_close.append(session)
        return to_close

    def _release(self, session: AnalysisSession) -> None:
        key = id(session)
        with self._lock:
            remaining = self._leases[key] - 1
            if remaining:
                self._leases[key] = remaining
                retired = None
            else:
                del self._leases[key]
                retired = self._retired.pop(key, None)
        if retired is not None:
            logger.info("Closing session for '%s' after its last lease", retired.document_id)
            retired.close()

    @staticmethod
    def _close_all(sessions: list[AnalysisSession]) -> None:
        for session in sessions:
            session.close()


@lru_cache
def get_session_cache() -> SessionCache:
    """Process-wide cache sized from settings."""
    return SessionCache(
        max_entries=settings.session_cache_max_entries,
        ttl_seconds=settings.session_cache_ttl_seconds,
    )
