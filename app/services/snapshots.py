# app/services/snapshots.py
from __future__ import annotations

import hashlib
import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from app.db import SessionLocal, utcnow
from app.models.snapshot import Snapshot

logger = structlog.get_logger("prophet.snapshots")


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


_locks_guard = threading.Lock()
# entries live only while some thread holds or waits on them
_key_locks: Dict[Tuple[str, str, str], _KeyLock] = {}


def canonical_json(payload: Any) -> str:
    """Key-order independent JSON used for hashing."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def canonical_hash(payload: Any) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


@contextmanager
def _entity_lock(key: Tuple[str, str, str]) -> Iterator[None]:
    with _locks_guard:
        entry = _key_locks.get(key)
        if entry is None:
            entry = _key_locks[key] = _KeyLock()
        entry.users += 1
    try:
        with entry.lock:
            yield
    finally:
        with _locks_guard:
            entry.users -= 1
            if not entry.users:
                del _key_locks[key]


@dataclass
class SnapshotWrite:
    diff_hash: str
    changed: bool
    previous: Optional[Dict[str, Any]] = None
    previous_date_key: Optional[str] = None
    current: Optional[Dict[str, Any]] = None

    @property
    def is_first(self) -> bool:
        return self.previous is None

    @property
    def comparable(self) -> bool:
        """Changed against an earlier snapshot (insight generation is worthwhile)."""
        return self.changed and self.previous is not None


class SnapshotStore:
    """
    Per-day snapshots keyed by (entity_type, entity_id, snapshot_type, date_key).

    `record` compares against the most recent snapshot on or before the
    given day (today's row included) and upserts today's row.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def record(
        self,
        *,
        entity_type: str,
        entity_id: str,
        location_id: str,
        snapshot_type: str,
        date_key: str,
        data: Dict[str, Any],
    ) -> SnapshotWrite:
        diff_hash = canonical_hash(data)
        stored = json.loads(canonical_json(data))

        with _entity_lock((entity_type, entity_id, snapshot_type)):
            with self._session() as db:
                previous = (
                    db.query(Snapshot)
                    .filter(
                        Snapshot.entity_type == entity_type,
                        Snapshot.entity_id == entity_id,
                        Snapshot.snapshot_type == snapshot_type,
                        Snapshot.date_key <= date_key,
                    )
                    .order_by(Snapshot.date_key.desc())
                    .first()
                )
                changed = previous is None or previous.diff_hash != diff_hash
                write = SnapshotWrite(
                    diff_hash=diff_hash,
                    changed=changed,
                    previous=previous.raw_data if previous is not None else None,
                    previous_date_key=previous.date_key if previous is not None else None,
                    current=stored,
                )

                if previous is not None and previous.date_key == date_key:
                    if changed:
                        previous.raw_data = stored
                        previous.diff_hash = diff_hash
                        previous.captured_at = utcnow()
                else:
                    db.add(
                        Snapshot(
                            entity_type=entity_type,
                            entity_id=entity_id,
                            location_id=location_id,
                            snapshot_type=snapshot_type,
                            date_key=date_key,
                            raw_data=stored,
                            diff_hash=diff_hash,
                        )
                    )

        logger.debug(
            "snapshot_recorded",
            entity_type=entity_type,
            entity_id=entity_id,
            snapshot_type=snapshot_type,
            date_key=date_key,
            changed=changed,
        )
        return write

    def latest(
        self,
        entity_type: str,
        entity_id: str,
        snapshot_type: str,
        *,
        on_or_before: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        with self._session() as db:
            q = db.query(Snapshot).filter(
                Snapshot.entity_type == entity_type,
                Snapshot.entity_id == entity_id,
                Snapshot.snapshot_type == snapshot_type,
            )
            if on_or_before:
                q = q.filter(Snapshot.date_key <= on_or_before)
            row = q.order_by(Snapshot.date_key.desc()).first()
            return row.raw_data if row is not None else None

    def for_location(
        self, location_id: str, snapshot_type: str, date_key: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Rows of one type for a location (all entities), newest first."""
        with self._session() as db:
            q = db.query(Snapshot).filter(
                Snapshot.location_id == location_id,
                Snapshot.snapshot_type == snapshot_type,
            )
            if date_key:
                q = q.filter(Snapshot.date_key == date_key)
            rows = q.order_by(Snapshot.date_key.desc()).all()
            return [
                {
                    "entity_type": r.entity_type,
                    "entity_id": r.entity_id,
                    "date_key": r.date_key,
                    "data": r.raw_data,
                }
                for r in rows
            ]
