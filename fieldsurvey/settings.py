"""
Settings for the project.
"""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///fieldsurvey_tiles.db"
    "SQLAlchemy URL of the offline tile database."

    store_type: Literal["sql", "in_memory"] = "sql"
    "Where cached tiles live. 'in_memory' is lost when the process exits."

    max_storage_bytes: int | None = None
    "Quota for cached tile data. None leaves it to the underlying database."

    # Tile source settings
    layer_id: str = "satellite"
    "Identifier of the active tile layer; distinguishes sources sharing a store."
    tile_url_template: str = "https://{s}.google.com/vt/lyrs=s&x={x}&y={y}&z={z}"
    "Template for tile URLs, with {s}, {z}, {x} and {y} placeholders."
    tile_subdomains: list[str] = ["mt0", "mt1", "mt2", "mt3"]
    "Subdomains substituted for {s}. Each tile always maps to the same one (picked from x + y)."
    zoom_levels: list[int] = [17, 18, 19, 20, 21, 22]
    "Zoom levels saved when none are requested explicitly."

    # Fetch settings
    max_workers: int = 4
    "Number of concurrent tile fetches in a save job."
    fetch_retries: int = 2
    "Retries for a failed tile fetch before it is skipped."
    retry_backoff_seconds: float = 0.5
    "Initial backoff between retries, doubled on every attempt."
    fetch_timeout_seconds: float = 10.0
    "Timeout for an individual tile request."

    # Survey settings
    sink_url: str | None = None
    "Append-log endpoint receiving every accepted sample. None disables forwarding."
    sink_timeout_seconds: float = 5.0
    "Timeout for posting to the append-log endpoint."
    require_altitude: bool = False
    "Reject geolocation samples that carry no altitude."
    discrepancy_threshold_pct: float = 5.0
    "Warn when the two area estimates differ by more than this percentage."
    altitude_angle_mode: Literal["included", "tilt"] = "included"
    "Angle used for the altitude-corrected triangles."

    # Sink server settings
    log_dir: Path = Path("logs")
    "Directory the append-log server writes one file per session into."

    class Config:
        env_prefix = "FIELDSURVEY_"

    def create_store(self):
        """
        Create a tile store instance based on the settings.
        """
        if self.store_type == "in_memory":
            from fieldsurvey.tiles.memory import InMemoryTileStore

            return InMemoryTileStore(max_bytes=self.max_storage_bytes)
        else:
            from fieldsurvey.database import create_engine_from_url
            from fieldsurvey.tiles.sql import SQLTileStore

            return SQLTileStore(
                engine=create_engine_from_url(self.database_url),
                max_bytes=self.max_storage_bytes,
            )

    def create_fetcher(self):
        from fieldsurvey.tiles.fetch import HTTPTileFetcher

        return HTTPTileFetcher(
            url_template=self.tile_url_template,
            subdomains=self.tile_subdomains,
            timeout=self.fetch_timeout_seconds,
        )

    def create_manager(self, store=None, fetcher=None):
        from fieldsurvey.tiles.manager import TileCacheManager

        return TileCacheManager(
            store=store or self.create_store(),
            fetcher=fetcher or self.create_fetcher(),
            layer_id=self.layer_id,
            max_workers=self.max_workers,
            retries=self.fetch_retries,
            backoff=self.retry_backoff_seconds,
        )

    def create_sink(self):
        """
        Create the append-log sink samples are forwarded to.
        """
        from fieldsurvey.survey.sink import HTTPAppendLogSink, NullSink

        if self.sink_url is None:
            return NullSink()

        return HTTPAppendLogSink(url=self.sink_url, timeout=self.sink_timeout_seconds)


settings = Settings()
