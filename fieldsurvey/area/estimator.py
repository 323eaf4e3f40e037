"""
Two independent estimates of the area enclosed by surveyed vertices.

The planar estimate is the geodesic area of the closed polygon on the WGS84
ellipsoid, consistent with what a map shows. The altitude-corrected estimate
walks the path edge by edge, measures each edge as the hypotenuse of its
horizontal distance and altitude change, and sums the triangles hinged on
every pair of adjacent edges::

    area = sum(0.5 * slant[i] * slant[i + 1] * sin(theta[i]) for i in 0..n-3)

Only adjacent pairs are used and the closing edge back to the first vertex is
not, so on a flat rectangle the two estimates agree but in general the
altitude figure is an approximation of the surface, not an exact
integral. The two figures diverge when the walk climbs or descends.

``theta[i]`` depends on the angle mode:

* ``"included"`` - the angle between edge ``i`` and edge ``i + 1`` as 3D
  vectors (azimuth plus tilt), which makes each term the true area of the
  triangle on the slope;
* ``"tilt"`` - the tilt of edge ``i`` above the horizontal, as the first
  versions of the field app computed it. A flat walk scores zero area.
"""

import math
from typing import Literal, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pyproj import Geod

from fieldsurvey.survey.core import Vertex

GEOD = Geod(ellps="WGS84")

MIN_VERTICES = 3

ZERO_AREA_TOLERANCE = 1e-6
"Planar areas below this many square metres count as degenerate."

AngleMode = Literal["included", "tilt"]


class InsufficientVertices(ValueError):
    pass


class Edge(BaseModel):
    base: float
    "Horizontal geodesic distance, metres, rounded to centimetres."
    height: float
    "Altitude change along the edge, metres, rounded to centimetres."
    slant: float
    tilt_deg: float
    azimuth_deg: float
    "Heading when leaving the start vertex."
    arrival_azimuth_deg: float
    "Heading when reaching the end vertex."

    def vector(self, azimuth_deg: float) -> tuple[float, float, float]:
        """
        East, north, up components of the edge for the given heading.
        """
        azimuth = math.radians(azimuth_deg)
        return (
            self.base * math.sin(azimuth),
            self.base * math.cos(azimuth),
            self.height,
        )


class AreaReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    planar_area_m2: float = Field(alias="planarAreaM2")
    altitude_area_m2: float = Field(alias="altitudeAreaM2")
    discrepancy_pct: float | None = Field(alias="discrepancyPct")
    threshold_pct: float = Field(default=5.0, alias="thresholdPct")

    @property
    def exceeds_threshold(self) -> bool:
        return self.discrepancy_pct is not None and self.discrepancy_pct > self.threshold_pct

    @property
    def warning(self) -> str | None:
        if not self.exceeds_threshold:
            return None

        return (
            f"The difference in area calculations exceeds {self.threshold_pct:g}%. "
            f"Lat/Long area: {self.planar_area_m2:.2f}m², "
            f"Altitude-based area: {self.altitude_area_m2:.2f}m²"
        )


def _require_polygon(vertices: Sequence[Vertex]):
    if len(vertices) < MIN_VERTICES:
        raise InsufficientVertices(
            f"At least {MIN_VERTICES} vertices are needed, got {len(vertices)}"
        )


def horizontal_distance(a: Vertex, b: Vertex) -> float:
    _, _, distance = GEOD.inv(a.longitude, a.latitude, b.longitude, b.latitude)
    return distance


def planar_area(vertices: Sequence[Vertex]) -> float:
    """
    Geodesic area of the polygon closed from the last vertex back to the
    first, in square metres.
    """
    _require_polygon(vertices)

    area, _ = GEOD.polygon_area_perimeter(
        [v.longitude for v in vertices], [v.latitude for v in vertices]
    )

    return abs(area)


def edge_profile(vertices: Sequence[Vertex]) -> list[Edge]:
    """
    One edge per consecutive pair of vertices. A missing altitude counts as 0.
    """
    edges = []

    for previous, current in zip(vertices, vertices[1:]):
        azimuth, back_azimuth, distance = GEOD.inv(
            previous.longitude, previous.latitude, current.longitude, current.latitude
        )

        base = round(distance, 2)
        height = round((current.altitude or 0.0) - (previous.altitude or 0.0), 2)

        edges.append(
            Edge(
                base=base,
                height=height,
                slant=math.hypot(base, height),
                tilt_deg=math.degrees(math.atan2(height, base)),
                azimuth_deg=azimuth,
                arrival_azimuth_deg=(back_azimuth + 180.0) % 360.0,
            )
        )

    return edges


def _included_sine(first: Edge, second: Edge) -> float:
    # Both vectors are taken in the tangent frame of the shared vertex.
    ax, ay, az = first.vector(first.arrival_azimuth_deg)
    bx, by, bz = second.vector(second.azimuth_deg)

    cross = math.sqrt(
        (ay * bz - az * by) ** 2 + (az * bx - ax * bz) ** 2 + (ax * by - ay * bx) ** 2
    )
    lengths = first.slant * second.slant

    return 0.0 if lengths == 0.0 else cross / lengths


def altitude_area(vertices: Sequence[Vertex], angle_mode: AngleMode = "included") -> float:
    """
    Altitude-corrected area in square metres; see the module docstring.
    Three vertices give exactly one triangle.
    """
    _require_polygon(vertices)

    edges = edge_profile(vertices)
    area = 0.0

    for first, second in zip(edges, edges[1:]):
        if angle_mode == "tilt":
            sine = math.sin(math.radians(first.tilt_deg))
        elif angle_mode == "included":
            sine = _included_sine(first, second)
        else:
            raise ValueError(f"Unknown angle mode {angle_mode!r}")

        area += 0.5 * first.slant * second.slant * sine

    return area


def compare(
    planar_area_m2: float, altitude_area_m2: float, threshold_pct: float = 5.0
) -> AreaReport:
    """
    Relative difference of the two estimates, as a percentage of the planar
    one. Not applicable (None) when the planar area is zero.
    """
    if math.isclose(planar_area_m2, 0.0, abs_tol=ZERO_AREA_TOLERANCE):
        discrepancy = None
    else:
        discrepancy = abs(planar_area_m2 - altitude_area_m2) / planar_area_m2 * 100.0

    return AreaReport(
        planar_area_m2=planar_area_m2,
        altitude_area_m2=altitude_area_m2,
        discrepancy_pct=discrepancy,
        threshold_pct=threshold_pct,
    )


def estimate(
    vertices: Sequence[Vertex],
    threshold_pct: float = 5.0,
    angle_mode: AngleMode = "included",
) -> AreaReport:
    _require_polygon(vertices)

    return compare(
        planar_area(vertices),
        altitude_area(vertices, angle_mode=angle_mode),
        threshold_pct=threshold_pct,
    )
