"""
External collaborator interfaces and their reference implementations.

The engine depends on these through small abstract interfaces; the
implementations here are file- or memory-backed and good enough for a
single-host deployment and for tests.

    UserDirectory        who has 24/7 automation switched on
    SubscriptionChecker  is a user's paid plan still active
    PreferenceStore      per-user adapter ordering per capability key
    ActivityLog          user-visible audit trail (daily JSONL files)
    ArtifactArchive      long-term home for finished videos
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from reelforge.config import PREMIUM_PLAN
from reelforge.models import Artifact, ServicePreference
from reelforge.utils import _load_json, _now_iso, _now_utc, _parse_iso, _safe_name, _save_json

logger = logging.getLogger("reelforge.collaborators")


# ===================================================================
# USERS
# ===================================================================

@dataclass
class UserProfile:
    user_id: str
    automation_enabled: bool = False
    plan: str = ""
    preferred_topic: str = ""
    preferred_niche: str = ""
    next_payment_date: Optional[str] = None

    def is_automation_candidate(self) -> bool:
        return (
            self.automation_enabled
            and self.plan == PREMIUM_PLAN
            and bool(self.preferred_topic.strip())
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> UserProfile:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


class UserDirectory(ABC):

    @abstractmethod
    def find_automation_candidates(self) -> List[UserProfile]:
        """Users with automation on, the premium plan and a preferred topic."""

    @abstractmethod
    def get(self, user_id: str) -> Optional[UserProfile]:
        ...


class InMemoryUserDirectory(UserDirectory):

    def __init__(self, users: Optional[List[UserProfile]] = None) -> None:
        self._users: Dict[str, UserProfile] = {u.user_id: u for u in users or []}

    def add(self, user: UserProfile) -> None:
        self._users[user.user_id] = user

    def find_automation_candidates(self) -> List[UserProfile]:
        return [u for u in self._users.values() if u.is_automation_candidate()]

    def get(self, user_id: str) -> Optional[UserProfile]:
        return self._users.get(user_id)


class JsonUserDirectory(UserDirectory):
    """Reads users.json (a list of UserProfile objects) on every query."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    def _load(self) -> List[UserProfile]:
        return [UserProfile.from_dict(d) for d in _load_json(self._path, default=[])]

    def find_automation_candidates(self) -> List[UserProfile]:
        return [u for u in self._load() if u.is_automation_candidate()]

    def get(self, user_id: str) -> Optional[UserProfile]:
        return next((u for u in self._load() if u.user_id == user_id), None)


# ===================================================================
# SUBSCRIPTIONS
# ===================================================================

@dataclass
class SubscriptionStatus:
    active: bool
    plan: str = ""
    next_payment_date: Optional[str] = None
    reason: str = ""


class SubscriptionChecker(ABC):

    @abstractmethod
    def check(self, user_id: str) -> SubscriptionStatus:
        ...


class DirectorySubscriptionChecker(SubscriptionChecker):
    """Active when the user is on the premium plan and paid up to a future date."""

    def __init__(self, directory: UserDirectory, now: Callable[[], datetime] = _now_utc) -> None:
        self._directory = directory
        self._now = now

    def check(self, user_id: str) -> SubscriptionStatus:
        user = self._directory.get(user_id)
        if user is None:
            return SubscriptionStatus(active=False, reason="user not found")
        if user.plan != PREMIUM_PLAN:
            return SubscriptionStatus(active=False, plan=user.plan, reason="not on premium plan")
        due = _parse_iso(user.next_payment_date)
        if due is None:
            return SubscriptionStatus(active=False, plan=user.plan, reason="no payment date")
        if due <= self._now():
            return SubscriptionStatus(
                active=False, plan=user.plan, next_payment_date=user.next_payment_date,
                reason="payment overdue",
            )
        return SubscriptionStatus(active=True, plan=user.plan, next_payment_date=user.next_payment_date)


# ===================================================================
# PREFERENCES
# ===================================================================

class PreferenceStore(ABC):
    """Read side used by the registry.  Must be safe to call concurrently."""

    @abstractmethod
    def get(self, user_id: str, capability_key: str) -> Optional[ServicePreference]:
        ...


class InMemoryPreferenceStore(PreferenceStore):

    def __init__(self) -> None:
        self._prefs: Dict[tuple, ServicePreference] = {}

    def set(self, user_id: str, capability_key: str, adapter_ids: List[str]) -> ServicePreference:
        pref = ServicePreference(user_id, capability_key, tuple(adapter_ids))
        self._prefs[(user_id, capability_key)] = pref
        return pref

    def get(self, user_id: str, capability_key: str) -> Optional[ServicePreference]:
        return self._prefs.get((user_id, capability_key))


class JsonPreferenceStore(PreferenceStore):
    """preferences.json: a list of ServicePreference objects."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    def _load(self) -> Dict[tuple, ServicePreference]:
        prefs = {}
        for entry in _load_json(self._path, default=[]):
            try:
                pref = ServicePreference.from_dict(entry)
            except (KeyError, TypeError) as exc:
                logger.warning("Skipping malformed preference %r: %s", entry, exc)
                continue
            prefs[(pref.user_id, pref.capability_key)] = pref
        return prefs

    def get(self, user_id: str, capability_key: str) -> Optional[ServicePreference]:
        return self._load().get((user_id, capability_key))

    def set(self, user_id: str, capability_key: str, adapter_ids: List[str]) -> ServicePreference:
        pref = ServicePreference(user_id, capability_key, tuple(adapter_ids))
        with self._lock:
            prefs = self._load()
            prefs[(user_id, capability_key)] = pref
            _save_json(self._path, [p.to_dict() for p in prefs.values()])
        return pref


# ===================================================================
# ACTIVITY LOG
# ===================================================================

@dataclass
class ActivityEntry:
    action: str
    status: str = "info"
    user_id: Optional[str] = None
    operation_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ActivityEntry:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


class ActivityLog(Protocol):

    def log(
        self,
        action: str,
        status: str = "info",
        user_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ActivityEntry:
        ...

    def record_usage(self, user_id: str, kind: str, amount: int = 1,
                     operation_id: Optional[str] = None) -> ActivityEntry:
        ...


class JsonlActivityLog:
    """Appends one JSON line per entry to data/activity/YYYY-MM-DD.jsonl."""

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)
        self._lock = threading.Lock()

    def _file_for(self, day: str) -> Path:
        return self._dir / f"{day}.jsonl"

    def log(
        self,
        action: str,
        status: str = "info",
        user_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ActivityEntry:
        entry = ActivityEntry(
            action=action, status=status, user_id=user_id,
            operation_id=operation_id, details=dict(details or {}),
        )
        line = json.dumps(entry.to_dict(), default=str, ensure_ascii=False)
        with self._lock:
            self._dir.mkdir(parents=True, exist_ok=True)
            with open(self._file_for(entry.timestamp[:10]), "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        return entry

    def record_usage(self, user_id: str, kind: str, amount: int = 1, operation_id: Optional[str] = None) -> ActivityEntry:
        return self.log("usage", "info", user_id=user_id, operation_id=operation_id,
                        details={"kind": kind, "amount": amount})

    def recent(self, days: int = 1, user_id: Optional[str] = None, action: Optional[str] = None) -> List[ActivityEntry]:
        """Entries from the last *days* days, newest first."""
        today = _now_utc().date()
        entries: List[ActivityEntry] = []
        for offset in range(days):
            path = self._file_for((today - timedelta(days=offset)).isoformat())
            if not path.exists():
                continue
            with open(path, "r", encoding="utf-8") as fh:
                for raw in fh:
                    raw = raw.strip()
                    if not raw:
                        continue
                    try:
                        entry = ActivityEntry.from_dict(json.loads(raw))
                    except (json.JSONDecodeError, TypeError):
                        continue
                    if user_id and entry.user_id != user_id:
                        continue
                    if action and entry.action != action:
                        continue
                    entries.append(entry)
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries


# ===================================================================
# ARTIFACT ARCHIVE
# ===================================================================

class ArtifactArchive(ABC):

    @abstractmethod
    async def store(self, artifact: Artifact, name: str) -> str:
        """Archive *artifact* under *name*; return a shareable reference."""


class LocalArchive(ArtifactArchive):
    """Copies finished files into a directory and returns file:// URIs."""

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)

    async def store(self, artifact: Artifact, name: str) -> str:
        if not artifact.path:
            if artifact.url:
                return artifact.url
            raise FileNotFoundError("artifact has neither a path nor a URL")
        src = Path(artifact.path)
        if not src.exists():
            raise FileNotFoundError(f"file not found for archive: {src}")
        self._dir.mkdir(parents=True, exist_ok=True)
        dest = self._dir / _safe_name(name, max_len=160)
        await asyncio.to_thread(shutil.copy2, src, dest)
        logger.info("Archived %s -> %s", src.name, dest)
        return dest.resolve().as_uri()
