import threading
import time

import pytest
from conftest import FakeFetcher, grid_bounds, make_record

from fieldsurvey.tiles.core import StorageFull, TileKey, TileRecord
from fieldsurvey.tiles.events import LoadTileEnd, SaveEnd, SaveStart, StorageSize
from fieldsurvey.tiles.grid import tile_range
from fieldsurvey.tiles.manager import JobInProgress, TileCacheManager
from fieldsurvey.tiles.memory import InMemoryTileStore


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


def approve(job):
    return True


def test_plan_covers_three_by_three_grid(manager, origin_tile):
    x0, y0, z = origin_tile
    bounds = grid_bounds(x0, y0, z)

    job = manager.plan_save(bounds, [z], always_download=False)

    assert len(job.tiles) == 9
    assert {(k.x, k.y) for k in job.tiles} == {
        (x, y) for x in range(x0, x0 + 3) for y in range(y0, y0 + 3)
    }
    assert job.zoom_levels == {z}


def test_plan_excludes_stored_center_tile(manager, store, fetcher, origin_tile):
    x0, y0, z = origin_tile
    center = TileKey(layer_id="satellite", z=z, x=x0 + 1, y=y0 + 1)
    store.put(TileRecord.from_blob(center, b"cached"))

    job = manager.plan_save(grid_bounds(x0, y0, z), [z], always_download=False)

    assert len(job.tiles) == 8
    assert center not in job.tiles

    summary = manager.confirm_and_run(job, approve).result(timeout=10)

    assert summary.saved == 8
    assert len(fetcher.calls) == 8
    assert center not in fetcher.fetched
    assert store.get(center).blob == b"cached"


def test_always_download_includes_stored_tiles(manager, store, origin_tile):
    x0, y0, z = origin_tile
    store.put(TileRecord.from_blob(TileKey(layer_id="satellite", z=z, x=x0, y=y0), b"old"))

    job = manager.plan_save(grid_bounds(x0, y0, z), [z], always_download=True)

    assert len(job.tiles) == 9


def test_plan_keys_within_range_over_levels(manager, origin_tile):
    x0, y0, z = origin_tile
    bounds = grid_bounds(x0, y0, z)

    job = manager.plan_save(bounds, [z - 1, z, z + 1])

    for level in (z - 1, z, z + 1):
        r = tile_range(bounds, level)
        level_keys = [k for k in job.tiles if k.z == level]
        assert len(level_keys) == r.count
        assert all(r.contains(k.x, k.y) for k in level_keys)


def test_declined_job_fetches_nothing(manager, fetcher, origin_tile):
    x0, y0, z = origin_tile
    job = manager.plan_save(grid_bounds(x0, y0, z), [z])
    asked = []

    run = manager.confirm_and_run(job, lambda job: asked.append(len(job.tiles)) or False)

    assert run is None
    assert asked == [9]
    assert fetcher.calls == []
    assert manager.active_save() is None


def test_progress_events(manager, store, origin_tile):
    x0, y0, z = origin_tile
    job = manager.plan_save(grid_bounds(x0, y0, z), [z])

    run = manager.confirm_and_run(job, approve)
    events = list(run.events())

    assert isinstance(events[0], SaveStart)
    assert events[0].total == 9
    assert isinstance(events[-1], SaveEnd)

    tile_ends = [e for e in events if isinstance(e, LoadTileEnd)]
    assert len(tile_ends) == 9
    assert [e.completed for e in tile_ends] == list(range(1, 10))
    assert {e.key for e in tile_ends} == job.tiles

    sizes = [e.total_bytes for e in events if isinstance(e, StorageSize)]
    assert len(sizes) == 9
    assert max(sizes) == store.total_bytes() == 9 * 16

    assert run.result(timeout=10).saved == 9
    assert run.done()


def test_parallelism_is_bounded(store, origin_tile):
    x0, y0, z = origin_tile
    gate = threading.Event()
    fetcher = FakeFetcher(gate=gate)
    manager = TileCacheManager(
        store=store, fetcher=fetcher, layer_id="satellite", max_workers=3, backoff=0.0
    )

    try:
        job = manager.plan_save(grid_bounds(x0, y0, z), [z])
        run = manager.confirm_and_run(job, approve)

        wait_for(lambda: fetcher.in_flight == 3)
        time.sleep(0.05)
        assert fetcher.in_flight == 3

        gate.set()
        run.result(timeout=10)
        assert fetcher.max_in_flight == 3
    finally:
        gate.set()
        manager.close()


def test_flaky_tile_is_retried(store, origin_tile):
    x0, y0, z = origin_tile
    flaky = TileKey(layer_id="satellite", z=z, x=x0, y=y0)
    fetcher = FakeFetcher(flaky={flaky: 2})
    manager = TileCacheManager(
        store=store, fetcher=fetcher, layer_id="satellite", retries=2, backoff=0.0
    )

    try:
        job = manager.plan_save(grid_bounds(x0, y0, z), [z])
        summary = manager.confirm_and_run(job, approve).result(timeout=10)
    finally:
        manager.close()

    assert summary.saved == 9
    assert summary.failed == []
    assert fetcher.calls.count(flaky) == 3


def test_broken_tiles_do_not_abort_job(store, origin_tile):
    x0, y0, z = origin_tile
    broken = {
        TileKey(layer_id="satellite", z=z, x=x0, y=y0),
        TileKey(layer_id="satellite", z=z, x=x0 + 2, y=y0 + 2),
    }
    fetcher = FakeFetcher(broken=broken)
    manager = TileCacheManager(
        store=store, fetcher=fetcher, layer_id="satellite", retries=1, backoff=0.0
    )

    try:
        job = manager.plan_save(grid_bounds(x0, y0, z), [z])
        run = manager.confirm_and_run(job, approve)
        events = list(run.events())
        summary = run.result(timeout=10)
    finally:
        manager.close()

    assert summary.saved == 7
    assert {f.key for f in summary.failed} == broken
    assert all(f.attempts == 2 and f.reason == "HTTP 500" for f in summary.failed)

    failed_events = [e for e in events if isinstance(e, LoadTileEnd) and not e.ok]
    assert {e.key for e in failed_events} == broken
    assert events[-2].completed == 9
    assert not any(store.contains(k) for k in broken)


def test_cancel_lets_in_flight_finish(store, origin_tile):
    x0, y0, z = origin_tile
    gate = threading.Event()
    fetcher = FakeFetcher(gate=gate)
    manager = TileCacheManager(
        store=store, fetcher=fetcher, layer_id="satellite", max_workers=2, backoff=0.0
    )

    try:
        job = manager.plan_save(grid_bounds(x0, y0, z), [z])
        run = manager.confirm_and_run(job, approve)

        wait_for(lambda: fetcher.in_flight == 2)
        assert manager.cancel()
        gate.set()

        summary = run.result(timeout=10)
    finally:
        gate.set()
        manager.close()

    assert summary.cancelled
    assert summary.saved == 2
    assert len(fetcher.calls) == 2
    assert len(store.list_keys()) == 2


def test_second_save_is_rejected_while_running(store, origin_tile):
    x0, y0, z = origin_tile
    gate = threading.Event()
    manager = TileCacheManager(
        store=store, fetcher=FakeFetcher(gate=gate), layer_id="satellite", backoff=0.0
    )

    try:
        job = manager.plan_save(grid_bounds(x0, y0, z), [z])
        run = manager.confirm_and_run(job, approve)

        with pytest.raises(JobInProgress):
            manager.confirm_and_run(job, approve)
        with pytest.raises(JobInProgress):
            manager.remove(lambda count: True)

        other = manager.plan_save(grid_bounds(x0, y0, z), [z], layer_id="osm")
        other_run = manager.confirm_and_run(other, approve)

        gate.set()
        run.result(timeout=10)
        other_run.result(timeout=10)

        again = manager.confirm_and_run(job, approve)
        assert again.result(timeout=10).saved == 9
    finally:
        gate.set()
        manager.close()


def test_storage_full_surfaces_and_keeps_saved_tiles(origin_tile):
    x0, y0, z = origin_tile
    store = InMemoryTileStore(max_bytes=16 * 4)
    manager = TileCacheManager(
        store=store, fetcher=FakeFetcher(), layer_id="satellite", max_workers=1, backoff=0.0
    )

    try:
        job = manager.plan_save(grid_bounds(x0, y0, z), [z])
        run = manager.confirm_and_run(job, approve)
        events = list(run.events())

        with pytest.raises(StorageFull):
            run.result(timeout=10)
    finally:
        manager.close()

    summary = events[-1].summary
    assert summary.storage_full
    assert summary.saved == 4
    assert len(summary.failed) == 1
    assert store.total_bytes() == 64
    assert len(store.list_keys()) == 4


def test_remove_twice(manager, store):
    for x in range(5):
        store.put(make_record(x=x, size=10))
    asked = []

    assert manager.remove(lambda count: asked.append(count) or True) == 0
    assert store.total_bytes() == 0
    assert asked == [5]

    assert manager.remove(lambda count: asked.append(count) or True) == 0
    assert store.total_bytes() == 0
    assert asked == [5]


def test_remove_declined_keeps_tiles(manager, store):
    store.put(make_record(size=10))

    assert manager.remove(lambda count: False) == 10
    assert len(store.list_keys()) == 1


def test_remove_only_touches_active_layer(manager, store):
    store.put(make_record(layer_id="satellite", size=10))
    store.put(make_record(layer_id="osm", size=4))

    assert manager.remove(lambda count: True) == 4
    assert [k.layer_id for k in store.list_keys()] == ["osm"]


def test_storage_size_only_follows_own_writes(store, origin_tile):
    x0, y0, z = origin_tile
    gate = threading.Event()
    manager = TileCacheManager(
        store=store, fetcher=FakeFetcher(gate=gate), layer_id="satellite", backoff=0.0
    )

    try:
        job = manager.plan_save(grid_bounds(x0, y0, z), [z])
        run = manager.confirm_and_run(job, approve)

        store.put(make_record(layer_id="osm", size=100))
        gate.set()
        events = list(run.events())
    finally:
        gate.set()
        manager.close()

    sizes = [e.total_bytes for e in events if isinstance(e, StorageSize)]
    assert len(sizes) == 9
    assert max(sizes) == 100 + 9 * 16


def test_remove_blocks_other_jobs_on_its_layer(manager, store, origin_tile):
    x0, y0, z = origin_tile
    store.put(make_record(layer_id="satellite", size=10))
    store.put(make_record(layer_id="osm", size=4))
    asked = threading.Event()
    release = threading.Event()
    results = []

    def slow_confirm(count):
        asked.set()
        release.wait(timeout=5)
        return True

    remover = threading.Thread(target=lambda: results.append(manager.remove(slow_confirm)))
    remover.start()

    try:
        assert asked.wait(timeout=5)

        with pytest.raises(JobInProgress):
            manager.remove(lambda count: True)

        job = manager.plan_save(grid_bounds(x0, y0, z), [z])
        with pytest.raises(JobInProgress):
            manager.confirm_and_run(job, approve)

        assert manager.remove(lambda count: True, layer_id="osm") == 10
    finally:
        release.set()
        remover.join(timeout=5)

    assert results == [0]
    assert store.list_keys() == []
