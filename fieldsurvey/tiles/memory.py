"""
In-memory tile store, for tests and throwaway sessions.
"""

from typing import Iterable, Iterator

from .core import EvictionPolicy, TileKey, TileNotFoundError, TileRecord, TileStore


class InMemoryTileStore(TileStore):
    """
    A simple in-memory store for tiles.
    """

    records: dict[TileKey, TileRecord]

    def __init__(
        self,
        max_bytes: int | None = None,
        eviction: EvictionPolicy | None = None,
        internal_store_id: str | None = None,
    ):
        self.records = {}
        super().__init__(
            max_bytes=max_bytes,
            eviction=eviction,
            internal_store_id=internal_store_id or "in_memory",
        )

    def _initial_total_bytes(self) -> int:
        return sum(r.byte_size for r in self.records.values())

    def _size_of(self, key: TileKey) -> int | None:
        record = self.records.get(key, None)
        return None if record is None else record.byte_size

    def _write(self, record: TileRecord):
        self.records[record.key] = record

    def _remove(self, keys: Iterable[TileKey]) -> dict[TileKey, int]:
        removed = {}
        for key in keys:
            record = self.records.pop(key, None)
            if record is not None:
                removed[key] = record.byte_size

        return removed

    def get(self, key: TileKey) -> TileRecord:
        record = self.records.get(key, None)

        if record is None:
            self.logger.debug("store.inmemory.miss", tile_hash=key.hash)
            raise TileNotFoundError(f"Tile {key.hash} not found in store")

        return record

    def list_all(self, layer_id: str | None = None) -> Iterator[TileRecord]:
        with self._lock:
            snapshot = list(self.records.values())

        for record in snapshot:
            if layer_id is None or record.key.layer_id == layer_id:
                yield record

    def list_keys(self, layer_id: str | None = None) -> list[TileKey]:
        with self._lock:
            return [
                key
                for key in self.records
                if layer_id is None or key.layer_id == layer_id
            ]
