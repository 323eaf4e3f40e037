"""
GeoJSON overlay of the tiles held in a store, for showing what is
available offline on top of the map.
"""

from typing import Iterable

from .core import TileRecord
from .grid import tile_bounds


def tile_feature(record: TileRecord) -> dict:
    key = record.key
    b = tile_bounds(key.x, key.y, key.z)

    return {
        "type": "Feature",
        "geometry": {
            "type": "Polygon",
            "coordinates": [
                [
                    [b.west, b.north],
                    [b.east, b.north],
                    [b.east, b.south],
                    [b.west, b.south],
                    [b.west, b.north],
                ]
            ],
        },
        "properties": {
            "key": key.path,
            "layer_id": key.layer_id,
            "z": key.z,
            "x": key.x,
            "y": key.y,
            "size": record.byte_size,
            "saved_at": record.saved_at.isoformat(),
        },
    }


def stored_tiles_geojson(records: Iterable[TileRecord]) -> dict:
    """
    One polygon feature per stored tile.
    """
    return {
        "type": "FeatureCollection",
        "features": [tile_feature(record) for record in records],
    }
