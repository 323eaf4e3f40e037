"""
Table holding the downloaded tiles themselves.

They are indexed in FOUR ways:
    - layer_id
    - z
    - x, y
"""

from datetime import datetime

from sqlmodel import Field, SQLModel


class StoredTile(SQLModel, table=True):
    __tablename__ = "stored_tile"

    layer_id: str = Field(
        primary_key=True, max_length=255, description="The tile source this belongs to."
    )
    z: int = Field(primary_key=True, description="The zoom level of this tile.")
    x: int = Field(primary_key=True, description="The column of this tile.")
    y: int = Field(primary_key=True, description="The row of this tile.")

    blob: bytes = Field(description="The raw image as downloaded.")
    byte_size: int = Field(description="Length of the blob, summed for size reports.")
    saved_at: datetime = Field(description="When the tile was written.")
