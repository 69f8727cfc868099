"""
Single-source shortest paths over the street adjacency list.

Two Dijkstra variants share a heapq priority queue:
- single_source_all explores the whole reachable component and is used
  for bulk distance matrix construction
- single_source_target stops as soon as the target is settled and tracks
  parent pointers, for interactive point-to-point queries

Equal-distance candidates are popped in heap order, so among equal-cost
alternatives the returned path is implementation-defined; distances are not.
"""

import heapq
import math
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

from accessmap.services.network.graph import GraphEdge

Adjacency = Mapping[str, Sequence[GraphEdge]]


@dataclass(order=True)
class PriorityNode:
    """Node in the Dijkstra priority queue."""
    distance: float
    node_id: str = field(compare=False)


@dataclass
class PathResult:
    """Shortest path from source to target."""
    distance: float
    path: list[str]


def _checked_weight(edge: GraphEdge, source: str) -> float:
    weight = edge.weight
    if not math.isfinite(weight) or weight < 0:
        raise ValueError(f"Edge {source} -> {edge.to} has invalid weight {weight!r}")
    return weight


def single_source_all(source_id: str, adjacency: Adjacency) -> dict[str, float]:
    """
    Distances from a source to every reachable node.

    Args:
        source_id: Start node
        adjacency: Mapping of node id to outgoing edges

    Returns:
        Dict of node id -> shortest distance; the source maps to 0

    Raises:
        ValueError: If a negative or non-finite edge weight is encountered
    """
    dist: dict[str, float] = {source_id: 0.0}
    visited: set[str] = set()
    heap = [PriorityNode(distance=0.0, node_id=source_id)]

    while heap:
        current = heapq.heappop(heap)
        if current.node_id in visited:
            continue
        visited.add(current.node_id)

        for edge in adjacency.get(current.node_id, ()):
            if edge.to in visited:
                continue
            new_dist = current.distance + _checked_weight(edge, current.node_id)
            old_dist = dist.get(edge.to)
            if old_dist is None or new_dist < old_dist:
                dist[edge.to] = new_dist
                heapq.heappush(heap, PriorityNode(distance=new_dist, node_id=edge.to))

    return dist


def single_source_target(
    source_id: str,
    target_id: str,
    adjacency: Adjacency,
) -> Optional[PathResult]:
    """
    Shortest path between two nodes, stopping once the target is settled.

    Args:
        source_id: Start node
        target_id: End node
        adjacency: Mapping of node id to outgoing edges

    Returns:
        PathResult with the node path from source to target, or None if
        the target is unreachable

    Raises:
        ValueError: If a negative or non-finite edge weight is encountered
    """
    dist: dict[str, float] = {source_id: 0.0}
    parent: dict[str, str] = {}
    visited: set[str] = set()
    heap = [PriorityNode(distance=0.0, node_id=source_id)]

    while heap:
        current = heapq.heappop(heap)
        if current.node_id in visited:
            continue
        visited.add(current.node_id)

        if current.node_id == target_id:
            path = [target_id]
            node = target_id
            while node in parent:
                node = parent[node]
                path.append(node)
            path.reverse()
            return PathResult(distance=current.distance, path=path)

        for edge in adjacency.get(current.node_id, ()):
            if edge.to in visited:
                continue
            new_dist = current.distance + _checked_weight(edge, current.node_id)
            old_dist = dist.get(edge.to)
            if old_dist is None or new_dist < old_dist:
                dist[edge.to] = new_dist
                parent[edge.to] = current.node_id
                heapq.heappush(heap, PriorityNode(distance=new_dist, node_id=edge.to))

    return None
