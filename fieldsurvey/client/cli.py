"""
CLI components (using typer)
"""

import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.progress import Progress

from fieldsurvey.settings import settings

CONSOLE = Console()

APP = typer.Typer()


def _load_track(track: Path):
    from fieldsurvey.survey.core import Vertex

    try:
        with track.open("r") as handle:
            return TypeAdapter(list[Vertex]).validate_python(json.load(handle))
    except (OSError, ValueError, ValidationError) as e:
        CONSOLE.print(f"[red]Could not read track {track}: {e}[/red]")
        raise typer.Exit(code=1)


def _print_report(report):
    CONSOLE.print(f"Area by Lat Long: {report.planar_area_m2:.2f}m²")
    CONSOLE.print(f"Area By Altitude: {report.altitude_area_m2:.2f}m²")

    if report.discrepancy_pct is None:
        CONSOLE.print("Difference: not applicable (zero planar area)")
    else:
        CONSOLE.print(f"Difference: {report.discrepancy_pct:.2f}%")

    if report.warning:
        CONSOLE.print(f"[yellow]Warning: {report.warning}[/yellow]")


@APP.command()
def save(
    west: float,
    south: float,
    east: float,
    north: float,
    zoom: Optional[list[int]] = typer.Option(None, help="Zoom level to save; repeatable."),
    always_download: bool = False,
    layer: Optional[str] = None,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """
    Download the tiles covering a bounding box for offline use.
    """
    from fieldsurvey.tiles.core import StorageFull
    from fieldsurvey.tiles.events import LoadTileEnd, SaveEnd, SaveStart, StorageSize
    from fieldsurvey.tiles.grid import ViewportBounds
    from fieldsurvey.tiles.manager import JobInProgress

    try:
        bounds = ViewportBounds(west=west, south=south, east=east, north=north)
    except ValidationError as e:
        CONSOLE.print(f"[red]Invalid bounds: {e}[/red]")
        raise typer.Exit(code=1)

    manager = settings.create_manager()

    try:
        job = manager.plan_save(
            bounds,
            zoom_levels=zoom or settings.zoom_levels,
            always_download=always_download,
            layer_id=layer,
        )

        if not job.tiles:
            CONSOLE.print("Every tile is already stored.")
            return

        try:
            run = manager.confirm_and_run(
                job, lambda job: yes or typer.confirm(f"Save {len(job.tiles)} tiles?")
            )
        except JobInProgress as e:
            CONSOLE.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1)

        if run is None:
            CONSOLE.print("Nothing saved.")
            return

        with Progress(console=CONSOLE) as progress:
            task = progress.add_task("Saving tiles", total=len(job.tiles))

            for event in run.events():
                if isinstance(event, SaveStart):
                    progress.update(task, total=event.total)
                elif isinstance(event, LoadTileEnd):
                    progress.update(task, completed=event.completed)
                elif isinstance(event, StorageSize):
                    progress.update(
                        task,
                        description=f"Saving tiles ({event.total_bytes / 1024 / 1024:.1f} MB)",
                    )
                elif isinstance(event, SaveEnd):
                    break

        try:
            summary = run.result()
        except StorageFull as e:
            CONSOLE.print(
                f"[red]Storage is full, free some space and try again: {e}[/red]"
            )
            raise typer.Exit(code=1)

        CONSOLE.print(f"Saved {summary.saved} of {summary.total} tiles.")

        if summary.failed:
            CONSOLE.print(f"[yellow]{len(summary.failed)} tiles could not be fetched.[/yellow]")
    finally:
        manager.close()


@APP.command()
def remove(
    layer: Optional[str] = None,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """
    Remove every stored tile of a layer.
    """
    manager = settings.create_manager()

    try:
        total = manager.remove(
            lambda count: yes or typer.confirm(f"Remove all {count} tiles?"),
            layer_id=layer,
        )
    finally:
        manager.close()

    CONSOLE.print(f"Storage in use: {total} bytes")


@APP.command()
def info(layer: Optional[str] = None):
    """
    Show how many tiles are stored and how much space they take.
    """
    store = settings.create_store()
    layer = layer or settings.layer_id

    CONSOLE.print(f"Layer {layer}: {len(store.list_keys(layer_id=layer))} tiles")
    CONSOLE.print(f"Storage in use: {store.total_bytes()} bytes")


@APP.command()
def overlay(output: Optional[Path] = None, layer: Optional[str] = None):
    """
    Write the footprint of the stored tiles as GeoJSON.
    """
    from fieldsurvey.tiles.overlay import stored_tiles_geojson

    store = settings.create_store()
    geojson = stored_tiles_geojson(store.list_all(layer_id=layer or settings.layer_id))

    if output is None:
        CONSOLE.print_json(data=geojson)
        return

    with output.open("w") as handle:
        json.dump(geojson, handle, indent=2)

    CONSOLE.print(f"Wrote {len(geojson['features'])} tiles to {output}")


@APP.command()
def area(track: Path, threshold: Optional[float] = None):
    """
    Estimate the area enclosed by a recorded track (a JSON list of vertices).
    """
    from fieldsurvey.area.estimator import MIN_VERTICES, estimate

    vertices = _load_track(track)

    if len(vertices) < MIN_VERTICES:
        CONSOLE.print(f"[red]At least {MIN_VERTICES} vertices are needed.[/red]")
        raise typer.Exit(code=1)

    _print_report(
        estimate(
            vertices,
            threshold_pct=(
                threshold if threshold is not None else settings.discrepancy_threshold_pct
            ),
            angle_mode=settings.altitude_angle_mode,
        )
    )


@APP.command()
def survey(track: Path, sink_url: Optional[str] = None):
    """
    Walk a recorded track through a survey session, forwarding each sample
    to the append log.
    """
    from fieldsurvey.survey.core import InvalidCoordinate, SurveySession
    from fieldsurvey.survey.geolocation import (
        GeolocationError,
        ReplayGeolocationProvider,
        capture_sample,
    )
    from fieldsurvey.survey.sink import HTTPAppendLogSink

    provider = ReplayGeolocationProvider(_load_track(track))

    if sink_url is not None:
        sink = HTTPAppendLogSink(url=sink_url, timeout=settings.sink_timeout_seconds)
    else:
        sink = settings.create_sink()

    session = SurveySession(sink=sink)
    CONSOLE.print(f"Session ID: {session.start()}")

    try:
        while provider.remaining:
            try:
                vertex = capture_sample(
                    session, provider, require_altitude=settings.require_altitude
                )
            except (GeolocationError, InvalidCoordinate) as e:
                CONSOLE.print(f"[red]Error fetching location: {e}[/red]")
                continue

            CONSOLE.print(f"Lat: {vertex.latitude:.5f}, Lng: {vertex.longitude:.5f}")
    finally:
        sink.close()

    report = session.area_report(
        threshold_pct=settings.discrepancy_threshold_pct,
        angle_mode=settings.altitude_angle_mode,
    )

    if report is None:
        CONSOLE.print("[yellow]Fewer than three samples; no area computed.[/yellow]")
        return

    _print_report(report)


@APP.command()
def sink(host: str = "127.0.0.1", port: int = 5000):
    """
    Start the append-log server that survey sessions post to.
    """
    from uvicorn import run

    from fieldsurvey.server.app import app

    run(app, host=host, port=port)


def main():
    global APP

    APP()
