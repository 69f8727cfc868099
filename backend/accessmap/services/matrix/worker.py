"""
Distance matrix worker.

Runs in a background thread or process and talks to the orchestrating
event loop only through a queue of plain dict messages:

    {"type": "progress", "percent": int}
    {"type": "result", "matrix": [[source_id, [[target_id, distance], ...]], ...]}

Progress percentages never decrease and the result is always the last
message of a run.
"""

from typing import Iterable

from accessmap.services.network.graph import GraphEdge, StreetGraph
from accessmap.services.routing.shortest_path import single_source_all

DEFAULT_PROGRESS_STEP = 5


def build_worker_input(graph: StreetGraph, source_ids: Iterable[str]) -> dict:
    """Serializable worker payload: flat node/edge lists plus the sources."""
    payload = graph.serialize()
    payload["source_ids"] = list(source_ids)
    return payload


def _adjacency_from_payload(payload: dict) -> dict[str, list[GraphEdge]]:
    adjacency: dict[str, list[GraphEdge]] = {}
    for node in payload.get("nodes", []):
        adjacency.setdefault(node["id"], [])
    for edge in payload.get("edges", []):
        adjacency.setdefault(edge["from"], []).append(
            GraphEdge(to=edge["to"], weight=edge["weight"])
        )
        adjacency.setdefault(edge["to"], [])
    return adjacency


def run_matrix_worker(payload: dict, channel, progress_step: int = DEFAULT_PROGRESS_STEP) -> int:
    """
    Compute one shortest-path tree per source and post it back.

    Args:
        payload: Output of build_worker_input
        channel: Queue-like object with put()
        progress_step: Minimum percentage increase between progress messages

    Returns:
        Number of sources processed
    """
    adjacency = _adjacency_from_payload(payload)
    source_ids = payload.get("source_ids", [])
    total = len(source_ids)

    matrix = []
    last_percent = 0

    for i, source_id in enumerate(source_ids):
        distances = single_source_all(source_id, adjacency)
        matrix.append([source_id, [[target, dist] for target, dist in distances.items()]])

        percent = (i + 1) * 100 // total
        if percent >= last_percent + progress_step or i == total - 1:
            last_percent = percent
            channel.put({"type": "progress", "percent": percent})

    if total == 0:
        channel.put({"type": "progress", "percent": 100})

    channel.put({"type": "result", "matrix": matrix})
    return total
