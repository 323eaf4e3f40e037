"""
Progress events emitted while a save job runs, in completion order.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from .core import TileKey


class TileFailure(BaseModel):
    key: TileKey
    attempts: int
    reason: str


class SaveSummary(BaseModel):
    layer_id: str
    total: int
    saved: int = 0
    failed: list[TileFailure] = []
    cancelled: bool = False
    storage_full: bool = False

    @property
    def attempted(self) -> int:
        return self.saved + len(self.failed)


class SaveStart(BaseModel):
    event: Literal["savestart"] = "savestart"
    total: int


class LoadTileEnd(BaseModel):
    event: Literal["loadtileend"] = "loadtileend"
    key: TileKey
    ok: bool
    completed: int
    total: int
    error: str | None = None


class StorageSize(BaseModel):
    event: Literal["storagesize"] = "storagesize"
    total_bytes: int


class SaveEnd(BaseModel):
    event: Literal["saveend"] = "saveend"
    summary: SaveSummary


ProgressEvent = Annotated[
    Union[SaveStart, LoadTileEnd, StorageSize, SaveEnd], Field(discriminator="event")
]
