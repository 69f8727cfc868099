import math
from typing import Optional, Sequence

# Flat-earth conversion, valid only for city-sized extents
DEGREES_TO_METERS = 111000.0

COORD_PRECISION = 6


def equirectangular_distance(
    a: Sequence[float],
    b: Sequence[float],
    degrees_to_meters: float = DEGREES_TO_METERS,
) -> float:
    """
    Approximate distance between two (lng, lat) points.

    Both axes are scaled by the same constant, so this is a plain Euclidean
    distance in degree space expressed in meters.

    Args:
        a, b: Coordinates as (lng, lat) in degrees
        degrees_to_meters: Conversion factor applied to both axes

    Returns:
        Distance in meters
    """
    dx = (a[0] - b[0]) * degrees_to_meters
    dy = (a[1] - b[1]) * degrees_to_meters
    return math.sqrt(dx * dx + dy * dy)


def coord_key(coord: Sequence[float], precision: int = COORD_PRECISION) -> str:
    """
    Deterministic node id for a coordinate.

    Coordinates that agree to `precision` decimal places share a key.
    """
    # + 0.0 folds -0.0 into 0.0
    lng = coord[0] + 0.0
    lat = coord[1] + 0.0
    return f"{lng:.{precision}f},{lat:.{precision}f}"


def line_midpoint(a: Sequence[float], b: Sequence[float]) -> tuple[float, float]:
    """Midpoint of a straight line between two coordinates."""
    return ((a[0] + b[0]) / 2, (a[1] + b[1]) / 2)


def path_midpoint(
    coordinates: Sequence[Sequence[float]],
    degrees_to_meters: float = DEGREES_TO_METERS,
) -> tuple[float, float]:
    """
    Point halfway along a polyline, measured by path length.

    Args:
        coordinates: Ordered (lng, lat) coordinates of the path

    Returns:
        The interpolated midpoint; (0, 0) for an empty path
    """
    if not coordinates:
        return (0.0, 0.0)
    if len(coordinates) == 1:
        return (coordinates[0][0], coordinates[0][1])
    if len(coordinates) == 2:
        return line_midpoint(coordinates[0], coordinates[1])

    cumulative = [0.0]
    total = 0.0
    for prev, curr in zip(coordinates[:-1], coordinates[1:]):
        total += equirectangular_distance(prev, curr, degrees_to_meters)
        cumulative.append(total)

    half = total / 2

    for i in range(1, len(cumulative)):
        if cumulative[i] >= half:
            start = cumulative[i - 1]
            segment_length = cumulative[i] - start
            t = (half - start) / segment_length if segment_length > 0 else 0.0
            a, b = coordinates[i - 1], coordinates[i]
            return (a[0] + t * (b[0] - a[0]), a[1] + t * (b[1] - a[1]))

    last = coordinates[-1]
    return (last[0], last[1])


def ring_centroid(polygons: Sequence) -> tuple[float, float]:
    """
    Vertex-average centroid of a (multi)polygon's exterior rings.

    Args:
        polygons: GeoJSON MultiPolygon coordinates (list of polygons, each
            a list of rings)

    Returns:
        Mean of all exterior ring vertices, (0, 0) if there are none
    """
    sum_x = 0.0
    sum_y = 0.0
    count = 0

    for polygon in polygons:
        if not polygon:
            continue
        for coord in polygon[0]:
            sum_x += coord[0]
            sum_y += coord[1]
            count += 1

    if count == 0:
        return (0.0, 0.0)
    return (sum_x / count, sum_y / count)


def format_distance(meters: Optional[float]) -> str:
    """Format a distance for display: '842 m' or '1.23 km'."""
    if meters is None:
        return "N/A"
    if meters < 1000:
        return f"{math.floor(meters + 0.5)} m"
    return f"{meters / 1000:.2f} km"
