"""
Street graph model.

Builds an undirected, edge-weighted graph from street polylines. Only the
end points of each polyline become nodes; interior shape points are dropped,
so the graph models topology at intersections rather than exact geometry.
Nodes are keyed by their rounded coordinate, which makes coincident end
points of different streets collapse into a single node.
"""

import logging
import math
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Optional

import networkx as nx
from shapely.geometry import shape

from accessmap.models.schemas import Coordinate, StreetSegment
from accessmap.utils.geo import (
    COORD_PRECISION,
    DEGREES_TO_METERS,
    coord_key,
    equirectangular_distance,
)

logger = logging.getLogger(__name__)


class GraphBuildError(ValueError):
    """Raised when street input would produce an invalid graph."""


@dataclass(frozen=True)
class GraphNode:
    """A street intersection or dead end."""
    id: str
    coord: Coordinate  # (lng, lat)


@dataclass(frozen=True)
class GraphEdge:
    """Directed arc of the adjacency list."""
    to: str
    weight: float  # meters


class StreetGraph:
    """
    Read-only street network.

    Exposes nodes and adjacency as mapping proxies; there is no API for
    adding edges after construction.
    """

    def __init__(
        self,
        nodes: dict[str, GraphNode],
        adjacency: dict[str, list[GraphEdge]],
    ):
        self._nodes = dict(nodes)
        self._adjacency = {node_id: tuple(edges) for node_id, edges in adjacency.items()}
        self.nodes = MappingProxyType(self._nodes)
        self.adjacency = MappingProxyType(self._adjacency)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    @property
    def node_ids(self) -> list[str]:
        return list(self._nodes)

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        """Number of directed arcs (two per street segment)."""
        return sum(len(edges) for edges in self._adjacency.values())

    def coord(self, node_id: str) -> Coordinate:
        return self._nodes[node_id].coord

    def serialize(self) -> dict:
        """
        Flatten the graph into plain lists for transfer to a worker.

        Returns:
            Dict with 'nodes' ({id, coord}) and 'edges' ({from, to, weight})
        """
        nodes = [
            {"id": node.id, "coord": [node.coord[0], node.coord[1]]}
            for node in self._nodes.values()
        ]
        edges = [
            {"from": source, "to": edge.to, "weight": edge.weight}
            for source, edge_list in self._adjacency.items()
            for edge in edge_list
        ]
        return {"nodes": nodes, "edges": edges}

    def to_networkx(self) -> nx.Graph:
        """Undirected networkx view, keeping the lightest of parallel edges."""
        G = nx.Graph()
        for node in self._nodes.values():
            G.add_node(node.id, x=node.coord[0], y=node.coord[1])

        for source, edge_list in self._adjacency.items():
            for edge in edge_list:
                if G.has_edge(source, edge.to) and G[source][edge.to]["weight"] <= edge.weight:
                    continue
                G.add_edge(source, edge.to, weight=edge.weight)

        return G

    def component_count(self) -> int:
        """Number of connected components (0 for an empty graph)."""
        if not self._nodes:
            return 0
        return nx.number_connected_components(self.to_networkx())


def _parse_length(value: Any, index: int) -> Optional[float]:
    """Authoritative segment length, or None when it should be computed."""
    # Missing, empty and numeric zero fall back to the geometric length
    if value is None or value == "" or (isinstance(value, (int, float)) and value == 0):
        return None

    try:
        length = float(value)
    except (TypeError, ValueError) as e:
        raise GraphBuildError(f"Street segment {index} has an invalid length: {value!r}") from e

    if math.isnan(length) or math.isinf(length) or length < 0:
        raise GraphBuildError(f"Street segment {index} has an invalid length: {value!r}")

    return length


def build_street_graph(
    segments: Iterable[StreetSegment],
    precision: int = COORD_PRECISION,
    degrees_to_meters: float = DEGREES_TO_METERS,
) -> StreetGraph:
    """
    Build the street graph from polylines.

    Args:
        segments: Street polylines, optionally with an authoritative length
        precision: Decimal places used for node ids
        degrees_to_meters: Conversion used when a length must be computed

    Returns:
        StreetGraph with a forward and a backward edge per segment

    Raises:
        GraphBuildError: If a segment carries a malformed length
    """
    nodes: dict[str, GraphNode] = {}
    adjacency: dict[str, list[GraphEdge]] = {}
    skipped = 0

    for index, segment in enumerate(segments):
        coords = segment.coordinates
        if len(coords) < 2:
            skipped += 1
            continue

        start: Coordinate = (float(coords[0][0]), float(coords[0][1]))
        end: Coordinate = (float(coords[-1][0]), float(coords[-1][1]))

        start_key = coord_key(start, precision)
        end_key = coord_key(end, precision)

        if start_key not in nodes:
            nodes[start_key] = GraphNode(id=start_key, coord=start)
        if end_key not in nodes:
            nodes[end_key] = GraphNode(id=end_key, coord=end)

        length = _parse_length(segment.length, index)
        if length is None:
            length = equirectangular_distance(start, end, degrees_to_meters)

        adjacency.setdefault(start_key, []).append(GraphEdge(to=end_key, weight=length))
        adjacency.setdefault(end_key, []).append(GraphEdge(to=start_key, weight=length))

    if skipped:
        logger.warning("Skipped %d street segments with fewer than 2 coordinates", skipped)

    graph = StreetGraph(nodes, adjacency)
    logger.info(
        "Street graph built (nodes=%d edges=%d)",
        graph.node_count,
        graph.edge_count,
    )
    return graph


def street_segments_from_features(features: Iterable[dict]) -> list[StreetSegment]:
    """
    Convert parsed GeoJSON LineString features into street segments.

    Non-LineString geometries are skipped. The 'length' property, when
    present, is carried over as the authoritative length.
    """
    segments = []
    skipped = 0

    for feature in features:
        geometry = feature.get("geometry")
        if not geometry:
            skipped += 1
            continue

        geom = shape(geometry)
        if geom.geom_type != "LineString":
            skipped += 1
            continue

        properties = feature.get("properties") or {}
        segments.append(StreetSegment(
            coordinates=[(c[0], c[1]) for c in geom.coords],
            length=properties.get("length"),
        ))

    if skipped:
        logger.warning("Skipped %d street features without LineString geometry", skipped)

    return segments
