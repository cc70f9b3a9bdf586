# sync/grid.py
import math
from dataclasses import dataclass
from typing import Dict, List, Tuple

import h3
import structlog

from .config import CELL_QUERY_RADIUS_M, DEFAULT_H3_LEVEL
from .errors import ValidationError

log = structlog.get_logger()

EARTH_RADIUS_M = 6371000

# Average H3 hexagon edge length in meters per resolution.
# https://h3geo.org/docs/core-library/restable
# One extra ring of k-disk pushes the covered area out by ~1.5 edge
# lengths, so stepping one edge length per ring over-covers even where
# cells are smaller than average.
AVG_EDGE_LENGTH_M: Dict[int, float] = {
    6: 3724,
    7: 1406,
    8: 531,
    9: 200,
    10: 75,
    11: 28,
    12: 10,
}

# Cell boundary skew from centroid averaging, plus float noise
COVERAGE_SLACK_M = 1.0


@dataclass(frozen=True)
class CellDescriptor:
    cell_id: str
    level: int
    center_lat: float
    center_lng: float
    query_radius_m: int = CELL_QUERY_RADIUS_M


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points, in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lng2 - lng1)

    a = (math.sin(delta_phi / 2) ** 2 +
         math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def ring_step_m(level: int) -> float:
    step = AVG_EDGE_LENGTH_M.get(level)
    if step is None:
        step = h3.average_hexagon_edge_length(level, unit='m')
    return step


def ring_count(radius_m: float, level: int) -> int:
    # two rings of margin: the center cell and the cell holding the
    # farthest point are each off-center by up to one edge length
    return math.ceil(radius_m / ring_step_m(level)) + 2


def cell_centroid(cell_id: str) -> Tuple[float, float, float]:
    """
    Approximate cell center as the mean of its boundary vertices.

    Returns (lat, lng, reach_m) where reach_m is the largest distance from
    that centroid to any vertex, i.e. a circle that contains the cell.
    Averaging is meaningless for cells spanning the antimeridian or a
    pole; their reach is infinite so they are never pruned.
    """
    boundary = h3.cell_to_boundary(cell_id)
    lat = sum(v[0] for v in boundary) / len(boundary)
    lng = sum(v[1] for v in boundary) / len(boundary)

    lngs = [v[1] for v in boundary]
    if max(lngs) - min(lngs) > 180:
        return lat, lng, math.inf

    reach = max(haversine_m(lat, lng, v[0], v[1]) for v in boundary)
    return lat, lng, reach


def validate_area(center: Tuple[float, float], radius_m: float, level: int):
    try:
        lat, lng = center
    except (TypeError, ValueError):
        raise ValidationError(f"center must be a (lat, lng) pair, got {center!r}")

    for name, value, bound in (('lat', lat, 90), ('lng', lng, 180)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{name} must be a number, got {value!r}")
        if not math.isfinite(value) or abs(value) > bound:
            raise ValidationError(f"{name} out of range: {value}")

    if isinstance(radius_m, bool) or not isinstance(radius_m, (int, float)):
        raise ValidationError(f"radius_m must be a number, got {radius_m!r}")
    if not math.isfinite(radius_m) or radius_m <= 0:
        raise ValidationError(f"radius_m must be positive, got {radius_m}")

    if isinstance(level, bool) or not isinstance(level, int) or not 0 <= level <= 15:
        raise ValidationError(f"level must be an H3 resolution 0-15, got {level!r}")


def covering_cells(
    center: Tuple[float, float],
    radius_m: float,
    level: int = DEFAULT_H3_LEVEL,
    query_radius_m: int = CELL_QUERY_RADIUS_M,
) -> List[CellDescriptor]:
    """
    All H3 cells at `level` that together cover the circle of `radius_m`
    meters around `center` (lat, lng).

    Takes the k-disk around the center cell, then drops cells whose
    bounding circle lies entirely outside the query circle. Sorted by
    cell id so repeated calls give identical output.
    """
    validate_area(center, radius_m, level)
    lat, lng = center

    center_cell = h3.latlng_to_cell(lat, lng, level)
    k = ring_count(radius_m, level)

    cells = []
    for cell_id in h3.grid_disk(center_cell, k):
        c_lat, c_lng, reach = cell_centroid(cell_id)
        if haversine_m(lat, lng, c_lat, c_lng) > radius_m + reach + COVERAGE_SLACK_M:
            continue
        cells.append(CellDescriptor(
            cell_id=cell_id,
            level=level,
            center_lat=c_lat,
            center_lng=c_lng,
            query_radius_m=query_radius_m,
        ))

    cells.sort(key=lambda c: c.cell_id)

    log.info("grid.covered",
             center_cell=center_cell,
             level=level,
             radius_m=radius_m,
             rings=k,
             total_cells=len(cells))
    return cells
