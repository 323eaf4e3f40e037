"""
Slippy-map tile addressing (Web Mercator, XYZ scheme).
"""

import math

from pydantic import BaseModel, Field, model_validator

from .core import TileKey

MAX_LATITUDE = 85.0511287798
"Latitude at which the Web Mercator square ends."


class ViewportBounds(BaseModel):
    """
    Geographic bounds of a map viewport, in degrees.
    """

    west: float = Field(ge=-180.0, le=180.0)
    south: float = Field(ge=-90.0, le=90.0)
    east: float = Field(ge=-180.0, le=180.0)
    north: float = Field(ge=-90.0, le=90.0)

    @model_validator(mode="after")
    def check_order(self):
        if self.west > self.east:
            raise ValueError("west edge lies east of the east edge (antimeridian crossing)")
        if self.south > self.north:
            raise ValueError("south edge lies north of the north edge")
        return self


class TileRange(BaseModel):
    z: int
    min_x: int
    max_x: int
    min_y: int
    max_y: int

    @property
    def count(self) -> int:
        return (self.max_x - self.min_x + 1) * (self.max_y - self.min_y + 1)

    def contains(self, x: int, y: int) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y


def lonlat_to_tile(longitude: float, latitude: float, z: int) -> tuple[int, int]:
    """
    Column and row of the tile holding a point at zoom ``z``. Points on the
    far edges are clamped into the last tile.
    """
    n = 2**z
    latitude = max(-MAX_LATITUDE, min(MAX_LATITUDE, latitude))
    lat_rad = math.radians(latitude)

    x = int(math.floor((longitude + 180.0) / 360.0 * n))
    y = int(math.floor((1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n))

    return min(max(x, 0), n - 1), min(max(y, 0), n - 1)


def tile_to_lonlat(x: float, y: float, z: int) -> tuple[float, float]:
    """
    Longitude and latitude of the north-west corner of tile ``x, y``.
    Fractional indices give points inside the tile.
    """
    n = 2**z
    longitude = x / n * 360.0 - 180.0
    latitude = math.degrees(math.atan(math.sinh(math.pi * (1.0 - 2.0 * y / n))))

    return longitude, latitude


def tile_bounds(x: int, y: int, z: int) -> ViewportBounds:
    west, north = tile_to_lonlat(x, y, z)
    east, south = tile_to_lonlat(x + 1, y + 1, z)

    return ViewportBounds(west=west, south=south, east=east, north=north)


def tile_center(x: int, y: int, z: int) -> tuple[float, float]:
    return tile_to_lonlat(x + 0.5, y + 0.5, z)


def tile_range(bounds: ViewportBounds, z: int) -> TileRange:
    # Rows grow southwards, so the north edge gives the smallest row.
    min_x, min_y = lonlat_to_tile(bounds.west, bounds.north, z)
    max_x, max_y = lonlat_to_tile(bounds.east, bounds.south, z)

    return TileRange(z=z, min_x=min_x, max_x=max_x, min_y=min_y, max_y=max_y)


def keys_for_bounds(
    bounds: ViewportBounds, zoom_levels: list[int], layer_id: str
) -> set[TileKey]:
    """
    Every tile key covering ``bounds`` at each of ``zoom_levels``.
    """
    keys = set()

    for z in sorted(set(zoom_levels)):
        if z < 0:
            raise ValueError(f"Zoom level must not be negative, got {z}")

        r = tile_range(bounds, z)
        keys.update(
            TileKey(layer_id=layer_id, z=z, x=x, y=y)
            for x in range(r.min_x, r.max_x + 1)
            for y in range(r.min_y, r.max_y + 1)
        )

    return keys
