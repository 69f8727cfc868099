"""
Tests for the analysis session: matrix caching, build guard and scoring.
"""

import asyncio
import math

import pytest

from accessmap.core.config import Settings
from accessmap.models.schemas import (
    AnalysisMode,
    AttractivityMode,
    Building,
    CustomPin,
    GridAttractor,
    HexCell,
    NegativeExponentialCurveConfig,
    PipelineState,
    PolylineCurveConfig,
    StreetSegment,
)
from accessmap.services.matrix.distance_matrix import DistanceMatrixBuilder, MatrixBuildError
from accessmap.services.session import AnalysisSession, SessionNotReadyError
from accessmap.utils.geo import coord_key

A = (4.0, 52.0)
B = (4.001, 52.0)
C = (4.002, 52.0)

NODE_A = coord_key(A)
NODE_B = coord_key(B)
NODE_C = coord_key(C)

# Weight of the default polyline curve at 250 m
DEFAULT_CURVE_AT_250 = 0.472


def make_settings(**overrides) -> Settings:
    values = dict(
        matrix_poll_interval_seconds=0.001,
        recompute_debounce_seconds=0.01,
    )
    values.update(overrides)
    return Settings(**values)


def streets():
    return [
        StreetSegment(coordinates=[A, B], length=100),
        StreetSegment(coordinates=[B, C], length=150),
    ]


def buildings():
    return [
        Building(id="home", centroid=A, land_use_areas={"Generic Residential": 120}),
        Building(id="shop", centroid=C, height=6, land_use_areas={"Generic Retail": 300}),
        Building(id="office", centroid=B, land_use_areas={"Generic Office Building": 900}),
    ]


class CountingBuilder(DistanceMatrixBuilder):
    """Builder that records how often a build actually starts."""

    def __init__(self, **kwargs):
        super().__init__(poll_interval=0.001, **kwargs)
        self.calls = 0

    async def build(self, graph, source_ids, on_progress=None, mode=AnalysisMode.BUILDINGS):
        self.calls += 1
        await asyncio.sleep(0.01)
        return await super().build(graph, source_ids, on_progress=on_progress, mode=mode)


class FailOnceBuilder(CountingBuilder):
    async def build(self, graph, source_ids, on_progress=None, mode=AnalysisMode.BUILDINGS):
        if self.calls == 0:
            self.calls += 1
            raise MatrixBuildError("worker crashed")
        return await super().build(graph, source_ids, on_progress=on_progress, mode=mode)


class GatedBuilder(DistanceMatrixBuilder):
    """Builder that waits for the test to release it."""

    def __init__(self):
        super().__init__(poll_interval=0.001)
        self.started = None
        self.release = None
        self.graphs = []

    async def build(self, graph, source_ids, on_progress=None, mode=AnalysisMode.BUILDINGS):
        self.graphs.append(graph)
        self.started.set()
        await self.release.wait()
        return await super().build(graph, source_ids, on_progress=on_progress, mode=mode)


class TestSessionLoading:
    """Tests for loading a network into the session."""

    def setup_method(self):
        self.session = AnalysisSession(settings=make_settings())

    def test_operations_need_a_network(self):
        with pytest.raises(SessionNotReadyError):
            self.session.measure(A, C)
        with pytest.raises(SessionNotReadyError):
            asyncio.run(self.session.ensure_building_matrix())
        assert self.session.recompute() is None

    def test_load_anchors_buildings(self):
        graph = self.session.load(streets(), buildings())

        assert graph.node_count == 3
        assert {b.id: b.nearest_node_id for b in self.session.buildings} == {
            "home": NODE_A,
            "shop": NODE_C,
            "office": NODE_B,
        }
        assert self.session.state == PipelineState.IDLE

    def test_load_without_spatial_index(self):
        session = AnalysisSession(settings=make_settings(use_spatial_index=False))
        session.load(streets(), buildings())

        assert session.buildings[0].nearest_node_id == NODE_A

    def test_land_use_follows_available_data(self):
        only_offices = [
            Building(id="home", centroid=A, land_use_areas={"Generic Residential": 1}),
            Building(id="office", centroid=B, land_use_areas={"Generic Office Building": 10}),
        ]

        self.session.load(streets(), only_offices)

        assert self.session.land_use == "Generic Office Building"

    def test_empty_network_leaves_entities_unassigned(self):
        self.session.load([], buildings())

        assert all(b.nearest_node_id is None for b in self.session.buildings)
        assert self.session.measure(A, C) is None


class TestSessionMatrices:
    """Tests for matrix caching and the in-flight build guard."""

    def setup_method(self):
        self.builder = CountingBuilder()
        self.session = AnalysisSession(settings=make_settings(), builder=self.builder)
        self.session.load(streets(), buildings())

    def test_building_matrix_uses_residential_nodes(self):
        matrix = asyncio.run(self.session.ensure_building_matrix())

        assert matrix.sources == [NODE_A]
        assert matrix.get(NODE_A, NODE_C) == 250.0

    def test_matrix_is_cached(self):
        async def main():
            first = await self.session.ensure_building_matrix()
            second = await self.session.ensure_building_matrix()
            return first, second

        first, second = asyncio.run(main())

        assert first is second
        assert self.builder.calls == 1

    def test_concurrent_requests_share_one_build(self):
        async def main():
            first = asyncio.ensure_future(self.session.ensure_building_matrix())
            await asyncio.sleep(0)
            computing = self.session.is_computing(AnalysisMode.BUILDINGS)
            second = await self.session.ensure_building_matrix()
            return computing, await first, second

        computing, first, second = asyncio.run(main())

        assert computing
        assert first is second
        assert self.builder.calls == 1
        assert not self.session.is_computing(AnalysisMode.BUILDINGS)

    def test_failed_build_does_not_stick(self):
        builder = FailOnceBuilder()
        session = AnalysisSession(settings=make_settings(), builder=builder)
        session.load(streets(), buildings())

        with pytest.raises(MatrixBuildError):
            asyncio.run(session.ensure_building_matrix())

        assert not session.is_computing(AnalysisMode.BUILDINGS)
        assert session.matrices[AnalysisMode.BUILDINGS] is None

        matrix = asyncio.run(session.ensure_building_matrix())
        assert matrix.sources == [NODE_A]

    def test_full_matrix_is_built_lazily(self):
        asyncio.run(self.session.ensure_building_matrix())
        assert self.session.status().full_matrix_ready is False

        matrix = asyncio.run(self.session.ensure_full_matrix())

        assert len(matrix) == 3
        assert self.session.status().full_matrix_ready is True

    def test_progress_is_forwarded(self):
        updates = []

        asyncio.run(self.session.ensure_building_matrix(on_progress=updates.append))

        assert updates[-1].percent == 100

    def test_build_for_replaced_network_is_rebuilt(self):
        """A reload mid-build yields a matrix for the new network only."""
        builder = GatedBuilder()
        session = AnalysisSession(settings=make_settings(), builder=builder)
        session.load(streets(), buildings())

        moved = (9.0, 50.0)
        new_streets = [StreetSegment(coordinates=[moved, (9.001, 50.0)], length=100)]
        new_buildings = [Building(id="home", centroid=moved, land_use_areas={"Generic Residential": 50})]

        async def main():
            builder.started = asyncio.Event()
            builder.release = asyncio.Event()
            task = asyncio.ensure_future(session.ensure_building_matrix())
            await builder.started.wait()
            session.load(new_streets, new_buildings)
            builder.release.set()
            return await task

        matrix = asyncio.run(main())

        assert matrix.sources == [coord_key(moved)]
        assert matrix.get(coord_key(moved), coord_key((9.001, 50.0))) == 100.0
        assert session.matrices[AnalysisMode.BUILDINGS] is matrix
        assert len(builder.graphs) == 2
        assert not session.is_computing(AnalysisMode.BUILDINGS)

    def test_reload_discards_matrices(self):
        asyncio.run(self.session.ensure_building_matrix())

        self.session.load(streets(), buildings())

        assert self.session.status().building_matrix_ready is False


class TestSessionScoring:
    """Tests for recompute and the debounced scheduling."""

    def setup_method(self):
        self.session = AnalysisSession(settings=make_settings(), builder=CountingBuilder())
        self.session.load(streets(), buildings())

    def test_recompute_without_matrix_stays_idle(self):
        assert self.session.recompute() is None
        assert self.session.state == PipelineState.IDLE

    def test_building_scores(self):
        asyncio.run(self.session.ensure_building_matrix())

        normalized = self.session.recompute()

        assert self.session.state == PipelineState.READY
        assert self.session.raw_scores == {"home": pytest.approx(300 * DEFAULT_CURVE_AT_250)}
        assert normalized == {"home": 1.0}
        assert self.session.summary.count == 1

    def test_setters_recompute_immediately_outside_a_loop(self):
        asyncio.run(self.session.ensure_building_matrix())

        self.session.set_attractivity_mode(AttractivityMode.VOLUME)

        assert self.session.raw_scores["home"] == pytest.approx(300 * 6 * DEFAULT_CURVE_AT_250)

        self.session.set_land_use("Generic Office Building")
        self.session.set_attractivity_mode(AttractivityMode.COUNT)
        self.session.set_curve(NegativeExponentialCurveConfig(alpha=0.01))

        assert self.session.raw_scores["home"] == pytest.approx(math.exp(-1))

    def test_recompute_publishes_new_dicts(self):
        asyncio.run(self.session.ensure_building_matrix())
        self.session.recompute()
        before = self.session.raw_scores

        self.session.set_curve(PolylineCurveConfig())

        assert self.session.raw_scores is not before
        assert before == self.session.raw_scores

    def test_recompute_is_debounced_on_the_loop(self):
        calls = []
        recompute = self.session.recompute

        def counting_recompute():
            calls.append(1)
            return recompute()

        self.session.recompute = counting_recompute

        async def main():
            await self.session.ensure_building_matrix()
            self.session.set_curve(NegativeExponentialCurveConfig())
            self.session.set_land_use("Generic Retail")
            self.session.set_curve(PolylineCurveConfig())
            state_before = self.session.state
            await asyncio.sleep(0.1)
            return state_before

        state_before = asyncio.run(main())

        assert state_before == PipelineState.IDLE
        assert len(calls) == 1
        assert self.session.state == PipelineState.READY

    def test_custom_pins_replace_buildings(self):
        asyncio.run(self.session.ensure_building_matrix())

        self.session.set_custom_pins([CustomPin(id="p1", coord=C, attractivity=2)])

        assert self.session.raw_scores == {"home": pytest.approx(2 * DEFAULT_CURVE_AT_250)}

    def test_move_pin(self):
        asyncio.run(self.session.ensure_building_matrix())
        self.session.set_custom_pins([CustomPin(id="p1", coord=C, attractivity=2)])

        pin = self.session.move_pin("p1", (4.0000001, 52.0))

        assert pin.nearest_node_id == NODE_A
        assert self.session.raw_scores == {"home": pytest.approx(2.0)}

    def test_move_unknown_pin(self):
        with pytest.raises(ValueError):
            self.session.move_pin("missing", A)

    def test_grid_scores(self):
        self.session.set_hex_cells([
            HexCell(id="h1", center=(4.0, 52.0001)),
            HexCell(id="h2", center=(4.002, 52.0001)),
            HexCell(id="h3", center=B, intersects_street=True),
        ])
        self.session.set_grid_attractors([GridAttractor(id="g", coord=B, attractivity=3)])
        self.session.set_analysis_mode(AnalysisMode.GRID)

        assert self.session.state == PipelineState.IDLE

        asyncio.run(self.session.ensure_full_matrix())
        self.session.recompute()

        assert set(self.session.raw_scores) == {"h1", "h2"}
        assert self.session.raw_scores["h1"] > self.session.raw_scores["h2"] > 0
        assert self.session.normalized_scores == {"h1": 1.0, "h2": 0.0}

    def test_measure(self):
        result = self.session.measure(A, C)

        assert result.distance_m == 250.0
        assert result.node_path == [NODE_A, NODE_B, NODE_C]

    def test_status(self):
        status = self.session.status()

        assert status.loaded
        assert status.node_count == 3
        assert status.building_count == 3
        assert status.computing == {"buildings": False, "grid": False}
