"""
Fetching tile images from a remote tile server.
"""

from abc import ABC, abstractmethod

import requests
import structlog
from structlog.types import FilteringBoundLogger

from .core import TileKey


class TileFetchFailed(Exception):
    """
    A tile could not be downloaded. Raised per attempt; the cache manager
    decides whether to retry.
    """

    def __init__(self, key: TileKey, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Tile {key.hash} fetch failed: {reason}")


class TileFetcher(ABC):
    logger: FilteringBoundLogger

    def __init__(self):
        self.logger = structlog.get_logger()

    @abstractmethod
    def fetch(self, key: TileKey) -> bytes:
        raise NotImplementedError

    def close(self):
        return


class HTTPTileFetcher(TileFetcher):
    """
    Downloads tiles from an XYZ url template such as
    ``https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png``.
    """

    url_template: str
    subdomains: list[str]
    timeout: float

    def __init__(
        self,
        url_template: str,
        subdomains: list[str] | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.url_template = url_template
        self.subdomains = subdomains or [""]
        self.timeout = timeout
        self.session = session or requests.Session()
        super().__init__()

    def url_for(self, key: TileKey) -> str:
        # Same subdomain choice as Leaflet, so a tile always maps to one host.
        subdomain = self.subdomains[abs(key.x + key.y) % len(self.subdomains)]

        return self.url_template.format(s=subdomain, z=key.z, x=key.x, y=key.y)

    def fetch(self, key: TileKey) -> bytes:
        url = self.url_for(key)
        log = self.logger.bind(tile_hash=key.hash, url=url)

        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            log.debug("fetch.http.error", error=str(e))
            raise TileFetchFailed(key, str(e)) from e

        if response.status_code != 200:
            log.debug("fetch.http.status", status=response.status_code)
            raise TileFetchFailed(key, f"HTTP {response.status_code}")

        if not response.content:
            log.debug("fetch.http.empty")
            raise TileFetchFailed(key, "empty response")

        log.debug("fetch.http.fetched", byte_size=len(response.content))
        return response.content

    def close(self):
        self.session.close()
