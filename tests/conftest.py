import threading

import pytest

from fieldsurvey.database import create_engine_from_url
from fieldsurvey.survey.sink import AppendLogSink
from fieldsurvey.tiles.core import TileKey, TileRecord
from fieldsurvey.tiles.fetch import TileFetcher, TileFetchFailed
from fieldsurvey.tiles.grid import ViewportBounds, lonlat_to_tile, tile_center
from fieldsurvey.tiles.manager import TileCacheManager
from fieldsurvey.tiles.memory import InMemoryTileStore
from fieldsurvey.tiles.sql import SQLTileStore


class FakeFetcher(TileFetcher):
    """
    Returns a small blob per tile. ``flaky`` maps keys to the number of
    failures before a fetch succeeds; ``broken`` keys never succeed.
    """

    def __init__(self, flaky=None, broken=None, gate=None, size=16):
        self.flaky = dict(flaky or {})
        self.broken = set(broken or ())
        self.gate = gate
        self.size = size
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()
        super().__init__()

    def fetch(self, key: TileKey) -> bytes:
        with self._lock:
            self.calls.append(key)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)

        try:
            if self.gate is not None:
                self.gate.wait(timeout=5)

            with self._lock:
                if key in self.broken:
                    raise TileFetchFailed(key, "HTTP 500")
                if self.flaky.get(key, 0) > 0:
                    self.flaky[key] -= 1
                    raise TileFetchFailed(key, "timeout")

            return b"x" * self.size
        finally:
            with self._lock:
                self.in_flight -= 1

    @property
    def fetched(self) -> set:
        return set(self.calls)


class RecordingSink(AppendLogSink):
    def __init__(self, fail=False):
        self.payloads = []
        self.fail = fail
        super().__init__()

    def send(self, payload: dict):
        if self.fail:
            raise ConnectionError("sink unreachable")
        self.payloads.append(payload)


def make_record(layer_id="satellite", z=17, x=0, y=0, size=10) -> TileRecord:
    return TileRecord.from_blob(TileKey(layer_id=layer_id, z=z, x=x, y=y), b"a" * size)


def grid_bounds(x0: int, y0: int, z: int, width: int = 3, height: int = 3):
    """
    Bounds running from the centre of tile (x0, y0) to the centre of the
    tile ``width - 1`` columns and ``height - 1`` rows further on.
    """
    west, north = tile_center(x0, y0, z)
    east, south = tile_center(x0 + width - 1, y0 + height - 1, z)

    return ViewportBounds(west=west, south=south, east=east, north=north)


@pytest.fixture
def origin_tile():
    z = 17
    x, y = lonlat_to_tile(10.0, 50.0, z)
    return x, y, z


@pytest.fixture
def memory_store():
    return InMemoryTileStore()


@pytest.fixture
def sql_store(tmp_path):
    return SQLTileStore(engine=create_engine_from_url(f"sqlite:///{tmp_path}/tiles.db"))


@pytest.fixture(params=["in_memory", "sql"])
def store(request, tmp_path):
    if request.param == "in_memory":
        return InMemoryTileStore()

    return SQLTileStore(engine=create_engine_from_url(f"sqlite:///{tmp_path}/tiles.db"))


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def manager(store, fetcher):
    manager = TileCacheManager(
        store=store, fetcher=fetcher, layer_id="satellite", max_workers=4, backoff=0.0
    )
    yield manager
    manager.close()


@pytest.fixture
def sink():
    return RecordingSink()
