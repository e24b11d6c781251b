from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import ApprovalRequest, ApprovalStatus
from .scheduling import Clock, SystemClock
from .state import load_state, save_state


logger = logging.getLogger("tweetgate.autonomy")

PENDING_PREFIX = "pending_approvals/"
PENDING_INDEX_KEY = "pending_approvals/index"
RESOLVED_PREFIX = "resolved_approvals/"

PHASE_PENDING = "pending"
PHASE_EXECUTING = "executing"
PHASE_SENT = "sent"


class CacheManager:
    """Durable key/value store with optional per-key expiry in seconds."""

    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any, expires: Optional[float] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryCacheManager(CacheManager):
    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._data: Dict[str, Dict[str, Any]] = {}

    def _now(self) -> float:
        return self.clock.now().timestamp()

    def get(self, key: str) -> Any:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at = item.get("expires_at")
        if expires_at is not None and expires_at <= self._now():
            self._data.pop(key, None)
            return None
        return item.get("value")

    def set(self, key: str, value: Any, expires: Optional[float] = None) -> None:
        expires_at = self._now() + float(expires) if expires is not None else None
        self._data[key] = {"value": value, "expires_at": expires_at}

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class JsonFileCacheManager(MemoryCacheManager):
    """Memory cache written through to a JSON file so it survives restarts."""

    def __init__(self, path: Path, clock: Optional[Clock] = None):
        super().__init__(clock=clock)
        self.path = path
        self._io_lock = threading.Lock()
        state = load_state(path)
        entries = state.get("entries", {})
        if isinstance(entries, dict):
            self._data = {str(k): v for k, v in entries.items() if isinstance(v, dict)}

    def _flush(self) -> None:
        with self._io_lock:
            save_state(self.path, {"entries": self._data})

    def set(self, key: str, value: Any, expires: Optional[float] = None) -> None:
        super().set(key, value, expires)
        self._flush()

    def delete(self, key: str) -> None:
        if key in self._data:
            super().delete(key)
            self._flush()


class PendingApprovalCache:
    """Fast-path mirror of in-flight approval requests.

    Entries live in process memory and in the durable ``CacheManager`` under
    ``pending_approvals/<id>``. Once an id is resolved its entry is removed and a
    short-lived ``resolved_approvals/<id>`` marker lets the poller skip rows it
    already finalized.
    """

    def __init__(
        self,
        cache: CacheManager,
        *,
        clock: Optional[Clock] = None,
        resolved_ttl_seconds: float = 24 * 3600,
    ):
        self.cache = cache
        self.clock = clock or SystemClock()
        self.resolved_ttl_seconds = resolved_ttl_seconds
        self._entries: Dict[str, Dict[str, Any]] = {}

    def _now(self) -> float:
        return self.clock.now().timestamp()

    def _index(self) -> List[str]:
        raw = self.cache.get(PENDING_INDEX_KEY)
        if not isinstance(raw, list):
            return []
        return [str(item) for item in raw]

    def _write_index(self, ids: List[str]) -> None:
        self.cache.set(PENDING_INDEX_KEY, ids)

    def _store_entry(self, request: ApprovalRequest, phase: str) -> None:
        entry = {
            "payload": request.to_cache(),
            "status": request.status.value,
            "phase": phase,
            "timestamp": self._now(),
        }
        self._entries[request.id] = entry
        self.cache.set(f"{PENDING_PREFIX}{request.id}", entry)

    def put(self, request: ApprovalRequest) -> None:
        self._store_entry(request, PHASE_PENDING)
        ids = self._index()
        if request.id not in ids:
            ids.append(request.id)
            self._write_index(ids)

    def _entry(self, approval_id: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(approval_id)
        if entry is not None:
            return entry
        cached = self.cache.get(f"{PENDING_PREFIX}{approval_id}")
        if isinstance(cached, dict) and isinstance(cached.get("payload"), dict):
            self._entries[approval_id] = cached
            return cached
        return None

    def get(self, approval_id: str) -> Optional[ApprovalRequest]:
        entry = self._entry(approval_id)
        if entry is None:
            return None
        try:
            return ApprovalRequest.from_record(entry["payload"])
        except ValueError as e:
            logger.warning("Dropping unreadable cache entry approval_id=%s error=%s", approval_id, e)
            self._entries.pop(approval_id, None)
            return None

    def phase(self, approval_id: str) -> Optional[str]:
        entry = self._entry(approval_id)
        if entry is None:
            return None
        return str(entry.get("phase") or PHASE_PENDING)

    def update(self, request: ApprovalRequest) -> None:
        phase = self.phase(request.id) or PHASE_PENDING
        self._store_entry(request, phase)

    def mark_executing(self, request: ApprovalRequest) -> None:
        """Durably record that a platform call is about to happen for this request."""
        self._store_entry(request, PHASE_EXECUTING)
        ids = self._index()
        if request.id not in ids:
            ids.append(request.id)
            self._write_index(ids)

    def mark_sent(self, request: ApprovalRequest) -> None:
        """Remember a platform success until the store has recorded it."""
        self._store_entry(request, PHASE_SENT)

    def purge(self, approval_id: str, status: ApprovalStatus) -> None:
        self._entries.pop(approval_id, None)
        self.cache.delete(f"{PENDING_PREFIX}{approval_id}")
        ids = self._index()
        if approval_id in ids:
            ids.remove(approval_id)
            self._write_index(ids)
        self.cache.set(
            f"{RESOLVED_PREFIX}{approval_id}",
            {"status": status.value, "timestamp": self._now()},
            expires=self.resolved_ttl_seconds,
        )

    def is_resolved(self, approval_id: str) -> bool:
        return self.cache.get(f"{RESOLVED_PREFIX}{approval_id}") is not None

    def find_by_dedupe_key(self, key: str) -> Optional[ApprovalRequest]:
        for approval_id in list(self._entries.keys()):
            request = self.get(approval_id)
            if request is not None and request.dedupe_key == key:
                return request
        return None

    def pending_ids(self) -> List[str]:
        return list(self._entries.keys())

    def seed(self) -> int:
        """Load durable entries into memory after a restart. Returns the number loaded."""
        ids = self._index()
        kept: List[str] = []
        for approval_id in ids:
            if self._entry(approval_id) is not None:
                kept.append(approval_id)
        if kept != ids:
            self._write_index(kept)
        logger.info("Seeded pending approval cache entries=%s", len(kept))
        return len(kept)

    def prune(self, max_age_seconds: float = 24 * 3600) -> int:
        """Forget in-memory entries older than ``max_age_seconds``; the durable copy stays."""
        cutoff = self._now() - max_age_seconds
        stale = [
            approval_id
            for approval_id, entry in self._entries.items()
            if float(entry.get("timestamp") or 0) < cutoff
        ]
        for approval_id in stale:
            self._entries.pop(approval_id, None)
        if stale:
            logger.info("Pruned stale pending approvals count=%s", len(stale))
        return len(stale)
