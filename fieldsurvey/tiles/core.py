"""
Core (abstract) tile store.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator

import structlog
from pydantic import BaseModel, ConfigDict, model_validator
from structlog.types import FilteringBoundLogger


class TileNotFoundError(Exception):
    pass


class StorageFull(Exception):
    """
    The store cannot take a tile without exceeding its quota. Nothing was
    written for the tile that triggered it.
    """

    pass


class TileKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    layer_id: str
    z: int
    x: int
    y: int

    @property
    def hash(self) -> str:
        return f"{self.layer_id}-{self.z}-{self.x}-{self.y}"

    @property
    def path(self) -> str:
        return f"{self.layer_id}/{self.z}/{self.x}/{self.y}"


class TileRecord(BaseModel):
    key: TileKey
    blob: bytes
    byte_size: int
    saved_at: datetime

    @model_validator(mode="after")
    def check_size(self):
        if self.byte_size != len(self.blob):
            raise ValueError(
                f"byte_size {self.byte_size} does not match blob length {len(self.blob)}"
            )
        return self

    @classmethod
    def from_blob(
        cls, key: TileKey, blob: bytes, saved_at: datetime | None = None
    ) -> "TileRecord":
        return cls(
            key=key,
            blob=blob,
            byte_size=len(blob),
            saved_at=saved_at or datetime.now(timezone.utc),
        )


class StorageChanged(BaseModel):
    total_bytes: int
    changed: list[TileKey]


StorageListener = Callable[[StorageChanged], None]


class EvictionPolicy(ABC):
    """
    Chooses tiles to drop when a put would exceed the quota. Stores have
    no policy unless one is given, in which case they raise StorageFull.
    """

    @abstractmethod
    def select(
        self, store: "TileStore", needed_bytes: int, exclude: frozenset[TileKey] = frozenset()
    ) -> list[TileKey]:
        """
        Keys whose removal frees at least ``needed_bytes``. Keys in
        ``exclude`` must not be chosen.
        """
        raise NotImplementedError


class OldestFirstEviction(EvictionPolicy):
    """
    Drops the earliest saved tiles until enough space is free.
    """

    def select(
        self, store: "TileStore", needed_bytes: int, exclude: frozenset[TileKey] = frozenset()
    ) -> list[TileKey]:
        victims = []
        freed = 0

        for record in sorted(store.list_all(), key=lambda r: r.saved_at):
            if freed >= needed_bytes:
                break
            if record.key in exclude:
                continue
            victims.append(record.key)
            freed += record.byte_size

        return victims


class TileStore(ABC):
    internal_store_id: str
    logger: FilteringBoundLogger
    max_bytes: int | None
    eviction: EvictionPolicy | None

    def __init__(
        self,
        max_bytes: int | None = None,
        eviction: EvictionPolicy | None = None,
        internal_store_id: str | None = None,
    ):
        self.internal_store_id = internal_store_id or str(uuid.uuid4())
        self.logger = structlog.get_logger()
        self.max_bytes = max_bytes
        self.eviction = eviction
        self._lock = threading.RLock()
        self._listeners: list[StorageListener] = []
        self._total_bytes = self._initial_total_bytes()

    # Backend hooks. Writes are only called with the store lock held.

    @abstractmethod
    def _initial_total_bytes(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def _size_of(self, key: TileKey) -> int | None:
        raise NotImplementedError

    @abstractmethod
    def _write(self, record: TileRecord):
        raise NotImplementedError

    @abstractmethod
    def _remove(self, keys: Iterable[TileKey]) -> dict[TileKey, int]:
        raise NotImplementedError

    @abstractmethod
    def get(self, key: TileKey) -> TileRecord:
        raise NotImplementedError

    @abstractmethod
    def list_all(self, layer_id: str | None = None) -> Iterator[TileRecord]:
        raise NotImplementedError

    @abstractmethod
    def list_keys(self, layer_id: str | None = None) -> list[TileKey]:
        raise NotImplementedError

    def contains(self, key: TileKey) -> bool:
        return self._size_of(key) is not None

    def total_bytes(self) -> int:
        with self._lock:
            return self._total_bytes

    def subscribe(self, listener: StorageListener):
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: StorageListener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, event: StorageChanged):
        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            listener(event)

    def _make_room(self, delta: int, keep: TileKey) -> list[TileKey]:
        """
        Ensure ``delta`` more bytes fit under the quota, evicting through the
        policy if there is one. Returns the evicted keys.
        """
        if self.max_bytes is None or self._total_bytes + delta <= self.max_bytes:
            return []

        evicted = []
        if self.eviction is not None:
            needed = self._total_bytes + delta - self.max_bytes
            victims = self.eviction.select(self, needed, exclude=frozenset([keep]))
            removed = self._remove(victims)
            self._total_bytes -= sum(removed.values())
            evicted = list(removed)

            self.logger.info(
                "store.evicted", count=len(evicted), freed=sum(removed.values())
            )

        if self._total_bytes + delta > self.max_bytes:
            raise StorageFull(
                f"Storing {delta} more bytes would exceed the quota of {self.max_bytes}"
            )

        return evicted

    def put(self, record: TileRecord):
        """
        Insert or overwrite the record for ``record.key``.
        """
        log = self.logger.bind(tile_hash=record.key.hash, byte_size=record.byte_size)

        with self._lock:
            previous = self._size_of(record.key) or 0
            delta = record.byte_size - previous

            try:
                evicted = self._make_room(delta, keep=record.key)
            except StorageFull:
                log.warning("store.full", total_bytes=self._total_bytes)
                raise

            self._write(record)
            self._total_bytes += delta
            total = self._total_bytes

        log.debug("store.put", total_bytes=total)
        self._notify(StorageChanged(total_bytes=total, changed=[record.key, *evicted]))

    def delete(self, keys: Iterable[TileKey]) -> int:
        """
        Delete the records for ``keys``. Keys that are not stored are ignored.
        """
        with self._lock:
            removed = self._remove(keys)
            self._total_bytes -= sum(removed.values())
            total = self._total_bytes

        self.logger.debug("store.delete", removed=len(removed), total_bytes=total)

        if removed:
            self._notify(StorageChanged(total_bytes=total, changed=list(removed)))

        return len(removed)
