"""
Analysis session.

Owns everything one analysis works on: the street graph, the entities
anchored to it, the cached distance matrices and the current scores. The
services it calls stay stateless; the session is the single writer of the
structures they produce and replaces them wholesale instead of mutating
published ones.

Pipeline state:
    IDLE       no matrix for the active mode yet
    COMPUTING  an aggregation pass is running
    READY      scores reflect the current inputs
"""

import asyncio
import logging
import time
from typing import Iterable, Optional, Sequence

from accessmap.core.config import Settings, get_settings
from accessmap.models.schemas import (
    AnalysisMode,
    AttractivityMode,
    Building,
    Coordinate,
    CurveConfig,
    CustomPin,
    GridAttractor,
    HexCell,
    LandUse,
    MeasurementPoint,
    MeasurementResult,
    PipelineState,
    PolylineCurveConfig,
    ScoreSummary,
    SessionStatus,
    StreetSegment,
)
from accessmap.services.buildings import (
    available_land_uses,
    buildings_with_land_use,
    residential_buildings,
)
from accessmap.services.matrix.distance_matrix import (
    DistanceMatrix,
    DistanceMatrixBuilder,
    ProgressCallback,
    residential_source_nodes,
)
from accessmap.services.network.graph import StreetGraph, build_street_graph
from accessmap.services.network.nearest import (
    Locator,
    NearestNodeIndex,
    assign_nearest_nodes,
)
from accessmap.services.routing.measurement import find_shortest_path
from accessmap.services.scoring.aggregator import (
    AggregationStats,
    calculate_accessibility,
    calculate_grid_accessibility,
    normalize_scores,
    summarize_scores,
)
from accessmap.services.scoring.attractivity import AssignedAttractivity, create_attractivity
from accessmap.services.scoring.decay import create_decay_curve

logger = logging.getLogger(__name__)


class SessionNotReadyError(RuntimeError):
    """Raised when an operation needs a loaded street network."""


class AnalysisSession:
    """Explicit owner of one analysis' state."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        builder: Optional[DistanceMatrixBuilder] = None,
    ):
        self.settings = settings or get_settings()
        self.builder = builder or DistanceMatrixBuilder(
            worker_kind=self.settings.matrix_worker_kind,
            poll_interval=self.settings.matrix_poll_interval_seconds,
            progress_step=self.settings.progress_step_percent,
        )

        self.graph: Optional[StreetGraph] = None
        self.locator: Optional[Locator] = None
        self._graph_epoch = 0

        self.buildings: list[Building] = []
        self.custom_pins: list[CustomPin] = []
        self.use_custom_pins = False
        self.grid_attractors: list[GridAttractor] = []
        self.hex_cells: list[HexCell] = []

        self.matrices: dict[AnalysisMode, Optional[DistanceMatrix]] = {
            AnalysisMode.BUILDINGS: None,
            AnalysisMode.GRID: None,
        }
        self._builds: dict[AnalysisMode, asyncio.Task] = {}

        self.curve: CurveConfig = PolylineCurveConfig()
        self._decay = create_decay_curve(self.curve)
        self.land_use = LandUse.RETAIL.value
        self.attractivity_mode = AttractivityMode.FLOOR_AREA
        self.analysis_mode = AnalysisMode.BUILDINGS

        self.state = PipelineState.IDLE
        self.raw_scores: dict[str, float] = {}
        self.normalized_scores: dict[str, float] = {}
        self.summary = ScoreSummary()
        self.stats: Optional[AggregationStats] = None
        self._recompute_handle: Optional[asyncio.TimerHandle] = None

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    @property
    def loaded(self) -> bool:
        return self.graph is not None

    def load(self, segments: Iterable[StreetSegment], buildings: Iterable[Building]) -> StreetGraph:
        """
        Build the street graph and anchor buildings onto it.

        Replaces any previous network; cached matrices and scores are
        discarded.
        """
        start_time = time.time()
        graph = build_street_graph(
            segments,
            precision=self.settings.coord_precision,
            degrees_to_meters=self.settings.degrees_to_meters,
        )

        self.graph = graph
        self.locator = NearestNodeIndex(graph) if self.settings.use_spatial_index else graph
        self._graph_epoch += 1

        self.buildings = list(buildings)
        self.custom_pins = []
        self.use_custom_pins = False
        self.grid_attractors = []
        self.hex_cells = []
        self._locate(self.buildings)

        # In-flight builds for the old network finish but are never published
        self.matrices = {mode: None for mode in AnalysisMode}
        self._builds = {}
        self._reset_scores()

        available = available_land_uses(self.buildings)
        if available and self.land_use not in available:
            self.land_use = available[0]

        logger.info(
            "Session loaded in %.2fs (nodes=%d buildings=%d residential=%d)",
            time.time() - start_time,
            graph.node_count,
            len(self.buildings),
            len(residential_buildings(self.buildings)),
        )
        return graph

    def _require_graph(self) -> StreetGraph:
        if self.graph is None:
            raise SessionNotReadyError("No street network loaded")
        return self.graph

    def _locate(self, entities: Sequence) -> None:
        graph = self._require_graph()
        if graph.node_count == 0:
            logger.warning("Street graph is empty; %d entities left unassigned", len(entities))
            return
        assign_nearest_nodes(entities, self.locator)

    def _reset_scores(self) -> None:
        self._cancel_pending_recompute()
        self.state = PipelineState.IDLE
        self.raw_scores = {}
        self.normalized_scores = {}
        self.summary = ScoreSummary()
        self.stats = None

    # -------------------------------------------------------------------------
    # Distance matrices
    # -------------------------------------------------------------------------

    def is_computing(self, mode: AnalysisMode) -> bool:
        task = self._builds.get(mode)
        return task is not None and not task.done()

    async def ensure_building_matrix(
        self, on_progress: Optional[ProgressCallback] = None
    ) -> DistanceMatrix:
        """Matrix from residential building nodes, built once per load."""
        return await self._ensure_matrix(AnalysisMode.BUILDINGS, on_progress)

    async def ensure_full_matrix(
        self, on_progress: Optional[ProgressCallback] = None
    ) -> DistanceMatrix:
        """Matrix from every graph node, built lazily for grid mode."""
        return await self._ensure_matrix(AnalysisMode.GRID, on_progress)

    async def ensure_matrix(
        self,
        mode: AnalysisMode,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DistanceMatrix:
        return await self._ensure_matrix(mode, on_progress)

    async def _ensure_matrix(
        self,
        mode: AnalysisMode,
        on_progress: Optional[ProgressCallback],
    ) -> DistanceMatrix:
        self._require_graph()

        matrix = self.matrices[mode]
        if matrix is not None:
            return matrix

        task = self._builds.get(mode)
        if task is None or task.done():
            task = asyncio.ensure_future(self._build_matrix(mode, on_progress))
            self._builds[mode] = task
        else:
            logger.info("Matrix build already in flight (mode=%s); waiting for it", mode.value)

        # Shielded so one cancelled waiter does not cancel a shared build
        return await asyncio.shield(task)

    async def _build_matrix(
        self,
        mode: AnalysisMode,
        on_progress: Optional[ProgressCallback],
    ) -> DistanceMatrix:
        graph = self._require_graph()
        epoch = self._graph_epoch

        if mode == AnalysisMode.GRID:
            sources = graph.node_ids
        else:
            sources = residential_source_nodes(self.buildings)

        try:
            matrix = await self.builder.build(graph, sources, on_progress=on_progress, mode=mode)
        finally:
            if self._builds.get(mode) is asyncio.current_task():
                del self._builds[mode]

        if epoch != self._graph_epoch:
            logger.warning("Discarding matrix built for a replaced street network (mode=%s)", mode.value)
            return await self._ensure_matrix(mode, on_progress)

        self.matrices[mode] = matrix
        if mode == self.analysis_mode:
            self.schedule_recompute()
        return matrix

    # -------------------------------------------------------------------------
    # Scoring inputs
    # -------------------------------------------------------------------------

    def set_curve(self, curve: CurveConfig) -> None:
        self.curve = curve
        self._decay = create_decay_curve(curve)
        self.schedule_recompute()

    def set_land_use(self, land_use: str) -> None:
        self.land_use = land_use
        self.schedule_recompute()

    def set_attractivity_mode(self, mode: AttractivityMode) -> None:
        self.attractivity_mode = mode
        self.schedule_recompute()

    def set_analysis_mode(self, mode: AnalysisMode) -> None:
        self.analysis_mode = mode
        self.schedule_recompute()

    def set_custom_pins(self, pins: Iterable[CustomPin], use: bool = True) -> None:
        pins = list(pins)
        self._locate(pins)
        self.custom_pins = pins
        self.use_custom_pins = use
        self.schedule_recompute()

    def move_pin(self, pin_id: str, coord: Coordinate) -> CustomPin:
        """Move a custom pin and re-anchor it to the network."""
        for pin in self.custom_pins:
            if pin.id == pin_id:
                pin.coord = coord
                self._locate([pin])
                self.schedule_recompute()
                return pin
        raise ValueError(f"Unknown custom pin: {pin_id}")

    def set_grid_attractors(self, attractors: Iterable[GridAttractor]) -> None:
        attractors = list(attractors)
        self._locate(attractors)
        self.grid_attractors = attractors
        self.schedule_recompute()

    def set_hex_cells(self, cells: Iterable[HexCell]) -> None:
        cells = list(cells)
        self._locate(cells)
        self.hex_cells = cells
        self.schedule_recompute()

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def schedule_recompute(self) -> None:
        """
        Debounced recompute on the running event loop.

        Without a running loop the recompute happens immediately.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.recompute()
            return

        self._cancel_pending_recompute()
        self._recompute_handle = loop.call_later(
            self.settings.recompute_debounce_seconds, self._run_scheduled_recompute
        )

    def _cancel_pending_recompute(self) -> None:
        if self._recompute_handle is not None:
            self._recompute_handle.cancel()
            self._recompute_handle = None

    def _run_scheduled_recompute(self) -> None:
        self._recompute_handle = None
        try:
            self.recompute()
        except Exception:
            # Nobody awaits a timer callback; keep the state consistent
            logger.exception("Scheduled score recompute failed")
            self.state = PipelineState.IDLE

    def recompute(self) -> Optional[dict[str, float]]:
        """
        Recompute scores for the active analysis mode.

        Returns:
            Normalized scores, or None while the mode's matrix is missing
        """
        self._cancel_pending_recompute()

        matrix = self.matrices[self.analysis_mode]
        if self.graph is None or matrix is None:
            self.state = PipelineState.IDLE
            return None

        self.state = PipelineState.COMPUTING
        start_time = time.time()
        stats = AggregationStats()

        if self.analysis_mode == AnalysisMode.GRID:
            raw = calculate_grid_accessibility(
                self.hex_cells, self.grid_attractors, matrix, self._decay, stats=stats
            )
        else:
            origins = residential_buildings(self.buildings)
            if self.use_custom_pins:
                destinations = self.custom_pins
                attractivity = AssignedAttractivity()
            else:
                destinations = buildings_with_land_use(self.buildings, self.land_use)
                attractivity = create_attractivity(self.attractivity_mode, self.land_use)
            raw = calculate_accessibility(
                origins, destinations, matrix, self._decay, attractivity, stats=stats
            )

        self.raw_scores = raw
        self.normalized_scores = normalize_scores(raw)
        self.summary = summarize_scores(raw)
        self.stats = stats
        self.state = PipelineState.READY

        logger.info(
            "Scores recomputed in %.3fs (mode=%s scored=%d unreachable_pairs=%d)",
            time.time() - start_time,
            self.analysis_mode.value,
            len(raw),
            stats.unreachable_pairs,
        )
        return self.normalized_scores

    # -------------------------------------------------------------------------
    # Measurement
    # -------------------------------------------------------------------------

    def measure(self, coord_a: Coordinate, coord_b: Coordinate) -> Optional[MeasurementResult]:
        """Shortest street path between two arbitrary points."""
        graph = self._require_graph()
        if graph.node_count == 0:
            return None

        point_a = MeasurementPoint(id="A", coord=coord_a)
        point_b = MeasurementPoint(id="B", coord=coord_b)
        self._locate([point_a, point_b])

        return find_shortest_path(
            graph, point_a, point_b, degrees_to_meters=self.settings.degrees_to_meters
        )

    def status(self) -> SessionStatus:
        return SessionStatus(
            loaded=self.loaded,
            state=self.state,
            analysis_mode=self.analysis_mode,
            computing={mode.value: self.is_computing(mode) for mode in AnalysisMode},
            building_matrix_ready=self.matrices[AnalysisMode.BUILDINGS] is not None,
            full_matrix_ready=self.matrices[AnalysisMode.GRID] is not None,
            node_count=self.graph.node_count if self.graph else 0,
            building_count=len(self.buildings),
        )
