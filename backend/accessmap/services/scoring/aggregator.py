"""
Accessibility score aggregation.

Raw score of an origin i:

    A_i = sum over destinations j of  Att_j * f(d_ij)

where d_ij is the network distance between the nearest nodes of i and j,
f is the decay curve and Att_j the destination's attractivity. Pairs missing
from the distance matrix are unreachable and contribute nothing; they are
counted separately from zero-weight pairs so the two can be told apart.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from accessmap.models.schemas import GridAttractor, HexCell, ScoreSummary
from accessmap.services.matrix.distance_matrix import DistanceMatrix
from accessmap.services.scoring.attractivity import AssignedAttractivity

logger = logging.getLogger(__name__)

DecayFn = Callable[[float], float]
AttractivityFn = Callable[[object], float]


@dataclass
class AggregationStats:
    """Pair counts from one aggregation pass."""
    origins_scored: int = 0
    origins_unassigned: int = 0
    contributing_pairs: int = 0
    unreachable_pairs: int = 0  # no matrix entry
    unassigned_destinations: int = 0
    zero_decay_pairs: int = 0
    zero_attractivity_pairs: int = 0


def _accumulate(
    node_id: str,
    destinations: Sequence,
    matrix: DistanceMatrix,
    decay: DecayFn,
    attractivity: AttractivityFn,
    stats: AggregationStats,
) -> float:
    acc = 0.0
    for destination in destinations:
        dist = matrix.get(node_id, destination.nearest_node_id)
        if dist is None:
            stats.unreachable_pairs += 1
            continue

        weight = decay(dist)
        if weight <= 0:
            stats.zero_decay_pairs += 1
            continue

        att = attractivity(destination)
        if att <= 0:
            stats.zero_attractivity_pairs += 1
            continue

        acc += att * weight
        stats.contributing_pairs += 1

    return acc


def _assigned(destinations: Iterable, stats: AggregationStats) -> list:
    assigned = []
    for destination in destinations:
        if destination.nearest_node_id:
            assigned.append(destination)
        else:
            stats.unassigned_destinations += 1
    return assigned


def calculate_accessibility(
    origins: Iterable,
    destinations: Iterable,
    matrix: DistanceMatrix,
    decay: DecayFn,
    attractivity: AttractivityFn,
    stats: Optional[AggregationStats] = None,
) -> dict[str, float]:
    """
    Raw accessibility score per origin.

    Args:
        origins: Entities with id and nearest_node_id (e.g. residential buildings)
        destinations: Entities with nearest_node_id (amenity buildings, pins)
        matrix: Distances from origin nodes
        decay: Distance -> weight
        attractivity: Destination -> weight
        stats: Optional collector for pair counts

    Returns:
        Dict of origin id -> raw score; origins without a nearest node are
        left out, and no destinations yields an empty dict
    """
    stats = stats if stats is not None else AggregationStats()
    destinations = list(destinations)
    raw_scores: dict[str, float] = {}

    if not destinations:
        return raw_scores

    targets = _assigned(destinations, stats)

    for origin in origins:
        if not origin.nearest_node_id:
            stats.origins_unassigned += 1
            continue

        raw_scores[origin.id] = _accumulate(
            origin.nearest_node_id, targets, matrix, decay, attractivity, stats
        )
        stats.origins_scored += 1

    logger.debug("Aggregation finished: %s", stats)
    return raw_scores


def group_cells_by_node(hex_cells: Iterable[HexCell]) -> dict[str, list[HexCell]]:
    """Non-street cells grouped by nearest node."""
    groups: dict[str, list[HexCell]] = {}
    for cell in hex_cells:
        if cell.intersects_street or not cell.nearest_node_id:
            continue
        groups.setdefault(cell.nearest_node_id, []).append(cell)
    return groups


def calculate_grid_accessibility(
    hex_cells: Iterable[HexCell],
    attractors: Sequence[GridAttractor],
    matrix: DistanceMatrix,
    decay: DecayFn,
    attractivity: Optional[AttractivityFn] = None,
    stats: Optional[AggregationStats] = None,
) -> dict[str, float]:
    """
    Raw accessibility score per hexagon cell.

    Cells sharing a nearest node share a score, so each node is scored once
    and the value copied to its cells. Cells crossing a street are skipped.

    Returns:
        Dict of cell id -> raw score; empty when there are no attractors
    """
    stats = stats if stats is not None else AggregationStats()
    raw_scores: dict[str, float] = {}

    if not attractors:
        return raw_scores

    attractivity = attractivity or AssignedAttractivity()
    targets = _assigned(attractors, stats)

    for node_id, cells in group_cells_by_node(hex_cells).items():
        acc = _accumulate(node_id, targets, matrix, decay, attractivity, stats)
        for cell in cells:
            raw_scores[cell.id] = acc
        stats.origins_scored += len(cells)

    return raw_scores


def normalize_scores(scores: dict[str, float]) -> dict[str, float]:
    """
    Min-max normalize scores into [0, 1].

    When every score is the same the range collapses; positive scores then
    map to 1 and the rest to 0.
    """
    if not scores:
        return {}

    low = min(scores.values())
    high = max(scores.values())
    value_range = high - low

    if value_range == 0:
        return {key: (1.0 if value > 0 else 0.0) for key, value in scores.items()}

    return {key: (value - low) / value_range for key, value in scores.items()}


def summarize_scores(scores: dict[str, float]) -> ScoreSummary:
    """Min, max and average of a raw score map."""
    if not scores:
        return ScoreSummary()

    values = list(scores.values())
    return ScoreSummary(
        min=min(values),
        max=max(values),
        average=sum(values) / len(values),
        count=len(values),
    )
