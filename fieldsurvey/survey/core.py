"""
A survey session: the ordered samples a user walks to during one outing.
"""

import math
import uuid
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel, ConfigDict, Field
from structlog.types import FilteringBoundLogger

from .sink import AppendLogSink, NullSink


class NoActiveSession(Exception):
    pass


class InvalidCoordinate(ValueError):
    pass


class Vertex(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    latitude: float
    longitude: float
    altitude: float | None = None
    captured_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="capturedAt"
    )

    def validate_coordinates(self):
        if not math.isfinite(self.latitude) or not -90.0 <= self.latitude <= 90.0:
            raise InvalidCoordinate(f"Latitude {self.latitude} is out of range")
        if not math.isfinite(self.longitude) or not -180.0 <= self.longitude <= 180.0:
            raise InvalidCoordinate(f"Longitude {self.longitude} is out of range")
        if self.altitude is not None and not math.isfinite(self.altitude):
            raise InvalidCoordinate(f"Altitude {self.altitude} is not finite")


class SurveySession:
    """
    Idle until ``start()``; ``reset()`` returns it to idle and forgets the
    samples and the session id.
    """

    sink: AppendLogSink
    session_id: str | None
    vertices: list[Vertex]
    logger: FilteringBoundLogger

    def __init__(self, sink: AppendLogSink | None = None):
        self.sink = sink or NullSink()
        self.session_id = None
        self.vertices = []
        self.logger = structlog.get_logger()

    @property
    def active(self) -> bool:
        return self.session_id is not None

    def start(self) -> str:
        if self.session_id is None:
            self.session_id = str(uuid.uuid4())
            self.logger.info("survey.start", session_id=self.session_id)

        return self.session_id

    def payload(self) -> dict:
        return {
            "sessionId": self.session_id,
            "vertices": [v.model_dump(mode="json", by_alias=True) for v in self.vertices],
        }

    def append_sample(self, vertex: Vertex):
        if self.session_id is None:
            raise NoActiveSession("Start a session before adding samples")

        vertex.validate_coordinates()

        self.vertices.append(vertex)

        log = self.logger.bind(session_id=self.session_id, count=len(self.vertices))
        log.info(
            "survey.sample",
            latitude=vertex.latitude,
            longitude=vertex.longitude,
            altitude=vertex.altitude,
        )

        try:
            self.sink.send(self.payload())
        except Exception as e:
            log.warning("survey.sink.failed", error=str(e))

    def reset(self):
        self.logger.info(
            "survey.reset", session_id=self.session_id, count=len(self.vertices)
        )
        self.vertices = []
        self.session_id = None

    def area_report(self, threshold_pct: float = 5.0, angle_mode: str = "included"):
        """
        Both area estimates for the current samples, or None with fewer
        than three.
        """
        from fieldsurvey.area.estimator import MIN_VERTICES, estimate

        if len(self.vertices) < MIN_VERTICES:
            return None

        return estimate(self.vertices, threshold_pct=threshold_pct, angle_mode=angle_mode)
