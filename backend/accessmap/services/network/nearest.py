"""
Nearest-node lookup.

Anchors buildings, pins, grid cells and measurement points onto the street
graph. Distances use the same equirectangular approximation as edge weights;
since both axes share one scale factor, the nearest node in degree space is
also the nearest node in meters, which lets the spatial index work on raw
coordinates.
"""

import logging
from typing import Iterable, Sequence, Union

from shapely.geometry import Point
from shapely.strtree import STRtree

from accessmap.services.network.graph import StreetGraph
from accessmap.utils.geo import DEGREES_TO_METERS, equirectangular_distance

logger = logging.getLogger(__name__)

# Attribute names holding an entity's coordinate, in lookup order
COORD_ATTRIBUTES = ("centroid", "coord", "center")


class NoNearestNodeError(ValueError):
    """Raised when a nearest node is requested from an empty graph."""


def find_nearest_node(
    graph: StreetGraph,
    coord: Sequence[float],
    degrees_to_meters: float = DEGREES_TO_METERS,
) -> str:
    """
    Find the graph node closest to a coordinate by exhaustive scan.

    Args:
        graph: Street graph
        coord: Query coordinate as (lng, lat)

    Returns:
        Id of the closest node (the first one found on ties)

    Raises:
        NoNearestNodeError: If the graph has no nodes
    """
    nearest_id = None
    nearest_dist = float("inf")

    for node_id, node in graph.nodes.items():
        dist = equirectangular_distance(coord, node.coord, degrees_to_meters)
        if dist < nearest_dist:
            nearest_dist = dist
            nearest_id = node_id

    if nearest_id is None:
        raise NoNearestNodeError("Street graph has no nodes")

    return nearest_id


class NearestNodeIndex:
    """
    STRtree-backed nearest-node lookup for larger graphs.

    Built once per graph; answers the same question as find_nearest_node.
    """

    def __init__(self, graph: StreetGraph):
        self.graph = graph
        self._node_ids = graph.node_ids
        self._tree = (
            STRtree([Point(graph.coord(node_id)) for node_id in self._node_ids])
            if self._node_ids
            else None
        )

    def nearest(self, coord: Sequence[float]) -> str:
        if self._tree is None:
            raise NoNearestNodeError("Street graph has no nodes")

        index = self._tree.nearest(Point(coord[0], coord[1]))
        return self._node_ids[int(index)]


Locator = Union[StreetGraph, NearestNodeIndex]


def _entity_coord(entity) -> Sequence[float]:
    for attr in COORD_ATTRIBUTES:
        coord = getattr(entity, attr, None)
        if coord is not None:
            return coord
    raise AttributeError(f"{type(entity).__name__} has no coordinate attribute")


def nearest_node_for(locator: Locator, coord: Sequence[float]) -> str:
    """Nearest node via an index when available, else by linear scan."""
    if isinstance(locator, NearestNodeIndex):
        return locator.nearest(coord)
    return find_nearest_node(locator, coord)


def assign_nearest_nodes(entities: Iterable, locator: Locator) -> int:
    """
    Write nearest_node_id onto every entity.

    Args:
        entities: Objects with a nearest_node_id attribute and one of
            centroid/coord/center
        locator: StreetGraph (linear scan) or NearestNodeIndex

    Returns:
        Number of entities assigned
    """
    count = 0
    for entity in entities:
        entity.nearest_node_id = nearest_node_for(locator, _entity_coord(entity))
        count += 1

    logger.debug("Assigned nearest nodes to %d entities", count)
    return count
