"""
Tile store backed by a SQL database through sqlmodel.
"""

from typing import Iterable, Iterator

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import func, select

from fieldsurvey.database import get_session
from fieldsurvey.orm import StoredTile

from .core import (
    EvictionPolicy,
    StorageFull,
    TileKey,
    TileNotFoundError,
    TileRecord,
    TileStore,
)


def _primary_key(key: TileKey) -> tuple[str, int, int, int]:
    return (key.layer_id, key.z, key.x, key.y)


class SQLTileStore(TileStore):
    """
    Persistent storage for downloaded tiles.

    Thread-safe: every call opens its own session and writes are serialised
    through the store lock, so the fetch workers can put() concurrently.
    """

    engine: Engine

    def __init__(
        self,
        engine: Engine,
        max_bytes: int | None = None,
        eviction: EvictionPolicy | None = None,
        internal_store_id: str | None = None,
    ):
        self.engine = engine
        super().__init__(
            max_bytes=max_bytes,
            eviction=eviction,
            internal_store_id=internal_store_id or "sql",
        )
        self.logger.info(
            "store.sql.opened", url=str(engine.url), total_bytes=self._total_bytes
        )

    def _initial_total_bytes(self) -> int:
        with get_session(self.engine) as session:
            return session.exec(
                select(func.coalesce(func.sum(StoredTile.byte_size), 0))
            ).one()

    def _size_of(self, key: TileKey) -> int | None:
        with get_session(self.engine) as session:
            stmt = select(StoredTile.byte_size).where(
                StoredTile.layer_id == key.layer_id,
                StoredTile.z == key.z,
                StoredTile.x == key.x,
                StoredTile.y == key.y,
            )
            return session.exec(stmt).one_or_none()

    def _write(self, record: TileRecord):
        row = StoredTile(
            layer_id=record.key.layer_id,
            z=record.key.z,
            x=record.key.x,
            y=record.key.y,
            blob=record.blob,
            byte_size=record.byte_size,
            saved_at=record.saved_at,
        )

        try:
            with get_session(self.engine) as session:
                session.merge(row)
                session.commit()
        except OperationalError as e:
            # SQLITE_FULL: "database or disk is full"
            if "full" in str(e.orig).lower():
                self.logger.warning("store.sql.disk_full", tile_hash=record.key.hash)
                raise StorageFull(str(e.orig)) from e
            raise

    def _remove(self, keys: Iterable[TileKey]) -> dict[TileKey, int]:
        removed = {}

        with get_session(self.engine) as session:
            for key in keys:
                row = session.get(StoredTile, _primary_key(key))

                if row is None or key in removed:
                    continue

                removed[key] = row.byte_size
                session.delete(row)

            session.commit()

        return removed

    def get(self, key: TileKey) -> TileRecord:
        with get_session(self.engine) as session:
            row = session.get(StoredTile, _primary_key(key))

            if row is None:
                self.logger.debug("store.sql.miss", tile_hash=key.hash)
                raise TileNotFoundError(f"Tile {key.hash} not found in store")

            return TileRecord(
                key=key,
                blob=row.blob,
                byte_size=row.byte_size,
                saved_at=row.saved_at,
            )

    def list_all(self, layer_id: str | None = None) -> Iterator[TileRecord]:
        # Records are loaded one at a time; tiles deleted while iterating
        # are skipped.
        for key in self.list_keys(layer_id=layer_id):
            try:
                yield self.get(key)
            except TileNotFoundError:
                continue

    def list_keys(self, layer_id: str | None = None) -> list[TileKey]:
        stmt = select(StoredTile.layer_id, StoredTile.z, StoredTile.x, StoredTile.y)

        if layer_id is not None:
            stmt = stmt.where(StoredTile.layer_id == layer_id)

        with get_session(self.engine) as session:
            return [
                TileKey(layer_id=row[0], z=row[1], x=row[2], y=row[3])
                for row in session.exec(stmt).all()
            ]
