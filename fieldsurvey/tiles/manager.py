"""
Offline tile cache manager: plans which tiles a viewport needs, downloads
them with bounded parallelism into a tile store, and removes them again.
"""

import queue
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Iterator

import structlog
from pydantic import BaseModel
from structlog.types import FilteringBoundLogger

from .core import StorageChanged, StorageFull, TileKey, TileRecord, TileStore
from .events import (
    LoadTileEnd,
    ProgressEvent,
    SaveEnd,
    SaveStart,
    SaveSummary,
    StorageSize,
    TileFailure,
)
from .fetch import TileFetcher, TileFetchFailed
from .grid import ViewportBounds, keys_for_bounds


class JobInProgress(Exception):
    """
    A save or remove job is already running against the layer.
    """

    pass


class SaveJob(BaseModel):
    layer_id: str
    tiles: set[TileKey]
    zoom_levels: set[int]
    always_download: bool


class SaveRun:
    """
    Handle on an approved save job. Progress is read through ``events()``
    by a single consumer; ``result()`` waits for the summary.
    """

    job: SaveJob
    summary: SaveSummary

    def __init__(self, job: SaveJob):
        self.job = job
        self.summary = SaveSummary(layer_id=job.layer_id, total=len(job.tiles))
        self._events: queue.Queue = queue.Queue()
        self._cancelled = threading.Event()
        self._future: Future | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        """
        Stop scheduling new fetches. Fetches already in flight still finish
        and their tiles are written.
        """
        self._cancelled.set()

    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def events(self) -> Iterator[ProgressEvent]:
        while True:
            event = self._events.get()
            yield event

            if isinstance(event, SaveEnd):
                return

    def result(self, timeout: float | None = None) -> SaveSummary:
        """
        Wait for the job. Raises StorageFull if the store filled up; tiles
        written before that stay cached.
        """
        return self._future.result(timeout=timeout)

    def _emit(self, event: ProgressEvent):
        self._events.put(event)


class TileCacheManager:
    store: TileStore
    fetcher: TileFetcher
    layer_id: str
    max_workers: int
    retries: int
    backoff: float
    logger: FilteringBoundLogger

    def __init__(
        self,
        store: TileStore,
        fetcher: TileFetcher,
        layer_id: str,
        max_workers: int = 4,
        retries: int = 2,
        backoff: float = 0.5,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")

        self.store = store
        self.fetcher = fetcher
        self.layer_id = layer_id
        self.max_workers = max_workers
        self.retries = retries
        self.backoff = backoff
        self.logger = structlog.get_logger()

        self._lock = threading.Lock()
        self._active_saves: dict[str, SaveRun] = {}
        self._active_removes: set[str] = set()
        self._coordinator = ThreadPoolExecutor(thread_name_prefix="fieldsurvey-save")

    def plan_save(
        self,
        bounds: ViewportBounds,
        zoom_levels: list[int] | set[int],
        always_download: bool = False,
        layer_id: str | None = None,
    ) -> SaveJob:
        """
        Work out the tiles covering ``bounds`` at each zoom level. Unless
        ``always_download`` is set, tiles already stored are left out.
        """
        layer_id = layer_id or self.layer_id
        log = self.logger.bind(layer_id=layer_id, zoom_levels=sorted(zoom_levels))

        tiles = keys_for_bounds(bounds, list(zoom_levels), layer_id=layer_id)
        covering = len(tiles)

        if not always_download:
            tiles -= set(self.store.list_keys(layer_id=layer_id))

        log.info("tiles.plan", covering=covering, planned=len(tiles))

        return SaveJob(
            layer_id=layer_id,
            tiles=tiles,
            zoom_levels=set(zoom_levels),
            always_download=always_download,
        )

    def _check_idle(self, layer_id: str):
        if layer_id in self._active_saves:
            raise JobInProgress(f"A save job is already running for layer {layer_id}")
        if layer_id in self._active_removes:
            raise JobInProgress(f"A remove job is already running for layer {layer_id}")

    def confirm_and_run(
        self, job: SaveJob, confirm: Callable[[SaveJob], bool]
    ) -> SaveRun | None:
        """
        Ask ``confirm`` whether to go ahead with ``job``; if it agrees, start
        downloading in the background and return the running job. A declined
        job is dropped and ``None`` is returned.
        """
        log = self.logger.bind(layer_id=job.layer_id, total=len(job.tiles))

        with self._lock:
            self._check_idle(job.layer_id)

        if not confirm(job):
            log.info("tiles.save.declined")
            return None

        run = SaveRun(job)

        with self._lock:
            self._check_idle(job.layer_id)
            self._active_saves[job.layer_id] = run

        run._future = self._coordinator.submit(self._run_save, run)

        return run

    def active_save(self, layer_id: str | None = None) -> SaveRun | None:
        with self._lock:
            return self._active_saves.get(layer_id or self.layer_id, None)

    def cancel(self, layer_id: str | None = None) -> bool:
        """
        Cancel the running save job for the layer, if there is one.
        """
        run = self.active_save(layer_id)

        if run is None:
            return False

        run.cancel()
        self.logger.info("tiles.save.cancel", layer_id=run.job.layer_id)
        return True

    def _save_one(self, key: TileKey) -> TileFailure | None:
        log = self.logger.bind(tile_hash=key.hash)
        reason = "not attempted"

        for attempt in range(self.retries + 1):
            try:
                blob = self.fetcher.fetch(key)
            except TileFetchFailed as e:
                reason = e.reason
                log.debug("tiles.fetch.attempt_failed", attempt=attempt + 1, reason=reason)

                if attempt < self.retries:
                    time.sleep(self.backoff * 2**attempt)
                continue

            self.store.put(TileRecord.from_blob(key, blob))
            return None

        log.warning("tiles.fetch.failed", attempts=self.retries + 1, reason=reason)
        return TileFailure(key=key, attempts=self.retries + 1, reason=reason)

    def _run_save(self, run: SaveRun) -> SaveSummary:
        job = run.job
        summary = run.summary
        log = self.logger.bind(layer_id=job.layer_id, total=summary.total)

        def on_storage_changed(event: StorageChanged):
            # Only writes made by this job; the size reported is the whole store.
            if any(key in job.tiles for key in event.changed):
                run._emit(StorageSize(total_bytes=event.total_bytes))

        # Sorted so tiles are fetched level by level, row by row.
        remaining = iter(sorted(job.tiles, key=lambda k: (k.z, k.x, k.y)))
        storage_error: StorageFull | None = None

        self.store.subscribe(on_storage_changed)
        run._emit(SaveStart(total=summary.total))
        log.info("tiles.save.start", workers=self.max_workers)

        try:
            with ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="fieldsurvey-fetch"
            ) as pool:
                in_flight: dict[Future, TileKey] = {}

                while True:
                    while (
                        len(in_flight) < self.max_workers
                        and not run.cancelled
                        and storage_error is None
                    ):
                        key = next(remaining, None)
                        if key is None:
                            break
                        in_flight[pool.submit(self._save_one, key)] = key

                    if not in_flight:
                        break

                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)

                    for future in done:
                        key = in_flight.pop(future)

                        try:
                            failure = future.result()
                        except StorageFull as e:
                            storage_error = e
                            failure = TileFailure(key=key, attempts=1, reason=str(e))

                        if failure is None:
                            summary.saved += 1
                        else:
                            summary.failed.append(failure)

                        run._emit(
                            LoadTileEnd(
                                key=key,
                                ok=failure is None,
                                completed=summary.attempted,
                                total=summary.total,
                                error=None if failure is None else failure.reason,
                            )
                        )

            summary.cancelled = run.cancelled and summary.attempted < summary.total
            summary.storage_full = storage_error is not None

            log.info(
                "tiles.save.end",
                saved=summary.saved,
                failed=len(summary.failed),
                cancelled=summary.cancelled,
                storage_full=summary.storage_full,
                total_bytes=self.store.total_bytes(),
            )
        finally:
            self.store.unsubscribe(on_storage_changed)

            with self._lock:
                self._active_saves.pop(job.layer_id, None)

            run._emit(SaveEnd(summary=summary))

        if storage_error is not None:
            raise storage_error

        return summary

    def remove(
        self, confirm: Callable[[int], bool], layer_id: str | None = None
    ) -> int:
        """
        Delete every stored tile of the layer once ``confirm`` agrees to the
        number of tiles. Returns the store's total size afterwards.
        """
        layer_id = layer_id or self.layer_id
        log = self.logger.bind(layer_id=layer_id)

        with self._lock:
            self._check_idle(layer_id)
            self._active_removes.add(layer_id)

        try:
            keys = self.store.list_keys(layer_id=layer_id)

            if not keys:
                log.debug("tiles.remove.empty")
                return self.store.total_bytes()

            if not confirm(len(keys)):
                log.info("tiles.remove.declined", count=len(keys))
                return self.store.total_bytes()

            removed = self.store.delete(keys)
            total = self.store.total_bytes()
            log.info("tiles.remove", removed=removed, total_bytes=total)

            return total
        finally:
            with self._lock:
                self._active_removes.discard(layer_id)

    def close(self):
        with self._lock:
            runs = list(self._active_saves.values())

        for run in runs:
            run.cancel()

        self._coordinator.shutdown(wait=True)
        self.fetcher.close()
