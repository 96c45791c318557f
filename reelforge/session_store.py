"""
Session Store: persisted provider authentication state.

A SessionRecord holds the Playwright storage_state (cookies + localStorage)
for one session key.  Adapters restore it on open() and write it back on
close(), so an authenticated provider session survives across runs and
process restarts.

SessionLeases guarantees that at most one live adapter instance holds a
given session key at a time; a second opener waits until the first closes.

Usage:
    from reelforge.session_store import FileSessionStore, SessionLeases

    store = FileSessionStore(settings.sessions_dir)
    leases = SessionLeases()

    async with leases.lease("runway_session", holder="runway"):
        record = store.load("runway_session")
        ...
        store.save(SessionRecord(session_key="runway_session", auth_state=state))

CLI:
    python -m reelforge sessions list
    python -m reelforge sessions clear runway_session
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

from reelforge.models import SessionRecord
from reelforge.utils import _load_json, _now_iso, _safe_name, _save_json

logger = logging.getLogger("reelforge.session_store")


# ===================================================================
# STORES
# ===================================================================

class SessionStore(ABC):
    """Where SessionRecords live between runs."""

    @abstractmethod
    def load(self, session_key: str) -> Optional[SessionRecord]:
        """Return the stored record, or None when nothing usable is stored."""

    @abstractmethod
    def save(self, record: SessionRecord) -> None:
        """Persist *record*, replacing any previous one for its key."""

    @abstractmethod
    def delete(self, session_key: str) -> bool:
        """Drop the record for *session_key*; True if one existed."""

    @abstractmethod
    def list_keys(self) -> List[str]:
        ...


class FileSessionStore(SessionStore):
    """One JSON document per session key, written atomically."""

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, session_key: str) -> Path:
        return self._dir / f"{_safe_name(session_key)}.json"

    def load(self, session_key: str) -> Optional[SessionRecord]:
        data = _load_json(self._path(session_key), default={})
        if not data:
            return None
        # Files written by hand or by older tooling hold a bare storage_state.
        if "auth_state" not in data and ("cookies" in data or "origins" in data):
            data = {"session_key": session_key, "auth_state": data}
        try:
            record = SessionRecord.from_dict(data)
        except TypeError as exc:
            logger.warning("Ignoring unreadable session '%s': %s", session_key, exc)
            return None
        if not record.auth_state:
            return None
        return record

    def save(self, record: SessionRecord) -> None:
        record.saved_at = _now_iso()
        _save_json(self._path(record.session_key), record.to_dict())
        logger.debug("Saved session '%s' (%d cookies)", record.session_key,
                     len(record.auth_state.get("cookies", [])))

    def delete(self, session_key: str) -> bool:
        path = self._path(session_key)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Deleted session '%s'", session_key)
        return True

    def list_keys(self) -> List[str]:
        if not self._dir.exists():
            return []
        keys = []
        for path in sorted(self._dir.glob("*.json")):
            data = _load_json(path, default={})
            keys.append(data.get("session_key") or path.stem)
        return keys


class MemorySessionStore(SessionStore):
    """Process-local store, used in tests and one-off tooling."""

    def __init__(self) -> None:
        self._records: Dict[str, SessionRecord] = {}

    def load(self, session_key: str) -> Optional[SessionRecord]:
        record = self._records.get(session_key)
        if record is None or not record.auth_state:
            return None
        return SessionRecord.from_dict(record.to_dict())

    def save(self, record: SessionRecord) -> None:
        record.saved_at = _now_iso()
        self._records[record.session_key] = SessionRecord.from_dict(record.to_dict())

    def delete(self, session_key: str) -> bool:
        return self._records.pop(session_key, None) is not None

    def list_keys(self) -> List[str]:
        return sorted(self._records)


# ===================================================================
# LEASES
# ===================================================================

class SessionLeases:
    """Exclusive per-session-key leases shared by every adapter in a process."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, str] = {}

    def _lock(self, session_key: str) -> asyncio.Lock:
        lock = self._locks.get(session_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_key] = lock
        return lock

    async def acquire(self, session_key: str, holder: str = "", timeout: Optional[float] = None) -> None:
        """Wait for the lease on *session_key*.

        Raises asyncio.TimeoutError when *timeout* elapses first.
        """
        lock = self._lock(session_key)
        if lock.locked():
            logger.debug(
                "Session '%s' held by %s; %s waiting",
                session_key, self._holders.get(session_key, "?"), holder or "?",
            )
        if timeout is None:
            await lock.acquire()
        else:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        self._holders[session_key] = holder

    def release(self, session_key: str) -> None:
        lock = self._locks.get(session_key)
        if lock is None or not lock.locked():
            return
        self._holders.pop(session_key, None)
        lock.release()

    def is_leased(self, session_key: str) -> bool:
        lock = self._locks.get(session_key)
        return bool(lock and lock.locked())

    def holder(self, session_key: str) -> Optional[str]:
        return self._holders.get(session_key)

    @asynccontextmanager
    async def lease(self, session_key: str, holder: str = "") -> AsyncIterator[None]:
        await self.acquire(session_key, holder)
        try:
            yield
        finally:
            self.release(session_key)
