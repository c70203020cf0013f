import threading

import pytest

from app.db import SessionLocal
from app.models.snapshot import Snapshot
from app.services.snapshots import SnapshotStore, _key_locks, canonical_hash, canonical_json


@pytest.fixture
def snapshots():
    return SnapshotStore(SessionLocal)


def _record(store, data, date_key="2026-03-02", entity_id="c1", snapshot_type="menu"):
    return store.record(
        entity_type="competitor",
        entity_id=entity_id,
        location_id="loc-1",
        snapshot_type=snapshot_type,
        date_key=date_key,
        data=data,
    )


def _rows():
    db = SessionLocal()
    try:
        return db.query(Snapshot).order_by(Snapshot.date_key).all()
    finally:
        db.close()


def test_hash_ignores_key_order():
    a = {"name": "Burger", "price": 12.5, "tags": ["beef"]}
    b = {"tags": ["beef"], "price": 12.5, "name": "Burger"}
    assert canonical_json(a) == canonical_json(b)
    assert canonical_hash(a) == canonical_hash(b)
    assert canonical_hash(a) != canonical_hash({**a, "price": 13})


def test_first_snapshot_is_changed_but_not_comparable(snapshots):
    write = _record(snapshots, {"items": 1})
    assert write.changed
    assert write.is_first
    assert not write.comparable
    assert len(_rows()) == 1


def test_same_content_next_day_is_unchanged(snapshots):
    _record(snapshots, {"items": 1}, date_key="2026-03-01")
    write = _record(snapshots, {"items": 1}, date_key="2026-03-02")

    assert not write.changed
    assert write.previous_date_key == "2026-03-01"
    # today's row is still written so history has no gaps
    assert [r.date_key for r in _rows()] == ["2026-03-01", "2026-03-02"]


def test_changed_content_is_comparable(snapshots):
    _record(snapshots, {"items": 1}, date_key="2026-03-01")
    write = _record(snapshots, {"items": 2}, date_key="2026-03-02")

    assert write.changed
    assert write.comparable
    assert write.previous == {"items": 1}
    assert write.current == {"items": 2}


def test_same_day_rerun_upserts_one_row(snapshots):
    _record(snapshots, {"items": 1})
    rerun = _record(snapshots, {"items": 1})
    assert not rerun.changed

    changed = _record(snapshots, {"items": 3})
    assert changed.changed
    rows = _rows()
    assert len(rows) == 1
    assert rows[0].raw_data == {"items": 3}
    assert rows[0].diff_hash == canonical_hash({"items": 3})


def test_later_days_are_not_used_as_previous(snapshots):
    _record(snapshots, {"items": 5}, date_key="2026-03-05")
    write = _record(snapshots, {"items": 1}, date_key="2026-03-02")
    assert write.is_first


def test_concurrent_identical_writes_decide_change_once(snapshots):
    results = []

    def worker():
        results.append(_record(snapshots, {"items": 9}))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r.changed) == 1
    assert len(_rows()) == 1
    assert _key_locks == {}


def test_entity_locks_are_released_after_each_write(snapshots):
    for n in range(5):
        _record(snapshots, {"items": n}, entity_id=f"c{n}")
        _record(snapshots, {"p": n}, entity_id=f"c{n}", snapshot_type="photos")

    assert len(_rows()) == 10
    assert _key_locks == {}


def test_latest_and_for_location(snapshots):
    _record(snapshots, {"v": 1}, date_key="2026-03-01")
    _record(snapshots, {"v": 2}, date_key="2026-03-02")
    _record(snapshots, {"p": 1}, entity_id="c2", snapshot_type="photos")

    assert snapshots.latest("competitor", "c1", "menu") == {"v": 2}
    assert snapshots.latest("competitor", "c1", "menu", on_or_before="2026-03-01") == {"v": 1}
    assert snapshots.latest("competitor", "c9", "menu") is None

    photos = snapshots.for_location("loc-1", "photos")
    assert photos == [{"entity_type": "competitor", "entity_id": "c2", "date_key": "2026-03-02", "data": {"p": 1}}]
