"""
Geolocation providers and the capture step that turns one position fix
into a survey sample.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path

import structlog
from pydantic import TypeAdapter

from .core import SurveySession, Vertex


class GeolocationError(Exception):
    pass


class GeolocationUnavailable(GeolocationError):
    pass


class GeolocationDenied(GeolocationError):
    pass


class GeolocationTimeout(GeolocationError):
    pass


class GeolocationProvider(ABC):
    @abstractmethod
    def current_position(self) -> Vertex:
        """
        One fix from the device. Raises a GeolocationError subclass when no
        position can be had.
        """
        raise NotImplementedError


class ReplayGeolocationProvider(GeolocationProvider):
    """
    Plays back a recorded track, one vertex per request.
    """

    def __init__(self, vertices: list[Vertex]):
        self.vertices = list(vertices)
        self.position = 0

    @classmethod
    def from_file(cls, path: Path) -> "ReplayGeolocationProvider":
        with open(path, "r") as handle:
            return cls(TypeAdapter(list[Vertex]).validate_python(json.load(handle)))

    @property
    def remaining(self) -> int:
        return len(self.vertices) - self.position

    def current_position(self) -> Vertex:
        if self.position >= len(self.vertices):
            raise GeolocationUnavailable("The recorded track has no more positions")

        vertex = self.vertices[self.position]
        self.position += 1

        return vertex


def capture_sample(
    session: SurveySession,
    provider: GeolocationProvider,
    require_altitude: bool = False,
) -> Vertex:
    """
    Ask the provider for a position and append it to the session. On any
    failure the session is left untouched and the error is raised.
    """
    log = structlog.get_logger().bind(session_id=session.session_id)

    try:
        vertex = provider.current_position()
    except GeolocationError as e:
        log.warning("survey.capture.failed", kind=type(e).__name__, error=str(e))
        raise

    if require_altitude and vertex.altitude is None:
        log.warning("survey.capture.no_altitude")
        raise GeolocationUnavailable(
            "Unable to retrieve your altitude. Please try again"
        )

    session.append_sample(vertex)

    return vertex
