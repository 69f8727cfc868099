"""
Ad hoc distance measurement between two arbitrary points.
"""

import logging
from typing import Optional

from accessmap.models.schemas import Coordinate, MeasurementPoint, MeasurementResult
from accessmap.services.matrix.distance_matrix import DistanceMatrix
from accessmap.services.network.graph import StreetGraph
from accessmap.services.routing.shortest_path import single_source_target
from accessmap.utils.geo import (
    DEGREES_TO_METERS,
    equirectangular_distance,
    format_distance,
    path_midpoint,
)

logger = logging.getLogger(__name__)


def calculate_euclidean_distance(
    coord_a: Coordinate,
    coord_b: Coordinate,
    degrees_to_meters: float = DEGREES_TO_METERS,
) -> float:
    """Straight-line distance in meters."""
    return equirectangular_distance(coord_a, coord_b, degrees_to_meters)


def calculate_network_distance(
    point_a: MeasurementPoint,
    point_b: MeasurementPoint,
    matrix: Optional[DistanceMatrix],
) -> Optional[float]:
    """
    Network distance between two points looked up in a distance matrix.

    Tries A -> B first and falls back to B -> A, since a selective matrix
    only holds rows for its source nodes.

    Returns:
        Distance in meters, or None if neither direction is in the matrix
    """
    if matrix is None:
        return None
    if not point_a.nearest_node_id or not point_b.nearest_node_id:
        return None

    dist = matrix.get(point_a.nearest_node_id, point_b.nearest_node_id)
    if dist is not None:
        return dist

    return matrix.get(point_b.nearest_node_id, point_a.nearest_node_id)


def find_shortest_path(
    graph: StreetGraph,
    point_a: MeasurementPoint,
    point_b: MeasurementPoint,
    degrees_to_meters: float = DEGREES_TO_METERS,
) -> Optional[MeasurementResult]:
    """
    Shortest street path between two measurement points.

    Args:
        graph: Street graph
        point_a, point_b: Points with nearest_node_id assigned

    Returns:
        MeasurementResult with path coordinates and distances, or None if
        either point is unassigned or no path exists
    """
    if not point_a.nearest_node_id or not point_b.nearest_node_id:
        return None

    result = single_source_target(
        point_a.nearest_node_id, point_b.nearest_node_id, graph.adjacency
    )
    if result is None:
        logger.info(
            "No path between %s and %s", point_a.nearest_node_id, point_b.nearest_node_id
        )
        return None

    coordinates = [graph.coord(node_id) for node_id in result.path]

    return MeasurementResult(
        distance_m=result.distance,
        euclidean_m=calculate_euclidean_distance(point_a.coord, point_b.coord, degrees_to_meters),
        formatted=format_distance(result.distance),
        coordinates=coordinates,
        node_path=result.path,
        midpoint=path_midpoint(coordinates, degrees_to_meters),
    )
