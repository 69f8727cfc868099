from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from typing import Optional
import asyncio
import json
import logging
import threading
import time

from accessmap.core.config import get_settings
from accessmap.models.schemas import (
    AnalysisMode,
    CurveSampleRequest,
    CurveSampleResponse,
    GridScoreRequest,
    MatrixBuildRequest,
    MatrixBuildResponse,
    MatrixProgress,
    MeasureRequest,
    MeasurementResult,
    NetworkLoadRequest,
    NetworkStats,
    ScoreRequest,
    ScoreResponse,
    SessionStatus,
)
from accessmap.services.buildings import (
    available_land_uses,
    buildings_from_features,
    residential_buildings,
)
from accessmap.services.matrix.distance_matrix import MatrixBuildError
from accessmap.services.network.graph import street_segments_from_features
from accessmap.services.scoring.decay import create_decay_curve, sample_curve
from accessmap.services.session import AnalysisSession, SessionNotReadyError

router = APIRouter()
logger = logging.getLogger(__name__)


# Single analysis session served by this process - initialized lazily
_session: Optional[AnalysisSession] = None
_session_lock = threading.Lock()


def get_session() -> AnalysisSession:
    """Get the session served by the API."""
    global _session
    if _session is None:
        with _session_lock:
            if _session is None:
                _session = AnalysisSession()
    return _session


def reset_session() -> None:
    """Drop the current session (useful for testing)."""
    global _session
    with _session_lock:
        _session = None


def _score_response(session: AnalysisSession) -> ScoreResponse:
    return ScoreResponse(
        mode=session.analysis_mode,
        state=session.state,
        raw_scores=session.raw_scores,
        normalized_scores=session.normalized_scores,
        summary=session.summary,
    )


@router.post("/network/load", response_model=NetworkStats)
async def load_network(request: NetworkLoadRequest):
    """
    Load a street network and buildings into the session.

    Accepts plain street segments and/or GeoJSON features. Any cached
    distance matrices and scores are discarded.
    """
    try:
        segments = list(request.streets) + street_segments_from_features(request.street_features)
        buildings = list(request.buildings) + buildings_from_features(request.building_features)

        logger.info(
            "Received /network/load request (segments=%d buildings=%d)",
            len(segments),
            len(buildings),
        )

        session = get_session()
        graph = session.load(segments, buildings)

        return NetworkStats(
            node_count=graph.node_count,
            edge_count=graph.edge_count,
            component_count=graph.component_count(),
            building_count=len(session.buildings),
            residential_count=len(residential_buildings(session.buildings)),
            available_land_uses=available_land_uses(session.buildings),
        )
    except ValueError as e:
        logger.warning("Validation error in /network/load: %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Unhandled error in /network/load")
        raise HTTPException(status_code=500, detail=f"Error loading network: {str(e)}")


@router.post("/matrix/build", response_model=MatrixBuildResponse)
async def build_matrix(request: MatrixBuildRequest):
    """
    Build (or reuse) the distance matrix for an analysis mode.

    'buildings' uses residential building nodes as sources; 'grid' uses
    every node of the network and is considerably more expensive.
    """
    session = get_session()
    try:
        start_time = time.time()
        matrix = await session.ensure_matrix(request.mode)
        return MatrixBuildResponse(
            mode=request.mode,
            source_count=len(matrix),
            processing_time_seconds=time.time() - start_time,
        )
    except SessionNotReadyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except MatrixBuildError as e:
        logger.error("Matrix build failed in /matrix/build: %s", e)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/matrix/stream")
async def build_matrix_stream(request: MatrixBuildRequest):
    """
    Build the distance matrix with streaming progress updates.

    Returns Server-Sent Events (SSE) with progress updates followed by a
    final 'complete' or 'error' event.
    """
    session = get_session()
    if not session.loaded:
        raise HTTPException(status_code=409, detail="No street network loaded")

    progress_queue: asyncio.Queue = asyncio.Queue()

    def on_progress(progress: MatrixProgress):
        progress_queue.put_nowait({"type": "progress", **progress.model_dump(mode="json")})

    async def generate():
        start_time = time.time()
        task = asyncio.ensure_future(session.ensure_matrix(request.mode, on_progress))
        logger.info("Matrix streaming started (mode=%s)", request.mode.value)

        while not task.done() or not progress_queue.empty():
            try:
                progress = await asyncio.wait_for(progress_queue.get(), timeout=0.1)
            except asyncio.TimeoutError:
                continue
            yield f"data: {json.dumps(progress)}\n\n"

        try:
            matrix = task.result()
        except Exception as e:
            logger.error("Streaming matrix build failed: %s", e)
            yield f"data: {json.dumps({'type': 'error', 'message': str(e)})}\n\n"
            return

        final_data = {
            "type": "complete",
            "mode": request.mode.value,
            "source_count": len(matrix),
            "processing_time_seconds": time.time() - start_time,
        }
        logger.info("Matrix streaming complete (mode=%s)", request.mode.value)
        yield f"data: {json.dumps(final_data)}\n\n"

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )


@router.post("/scores", response_model=ScoreResponse)
async def compute_scores(request: ScoreRequest):
    """
    Score residential buildings against amenity buildings or custom pins.

    Builds the building-level distance matrix first if needed.
    """
    session = get_session()
    try:
        await session.ensure_building_matrix()

        session.set_analysis_mode(AnalysisMode.BUILDINGS)
        session.set_curve(request.curve)
        session.set_land_use(request.land_use.value)
        session.set_attractivity_mode(request.attractivity_mode)
        if request.custom_pins is not None:
            session.set_custom_pins(request.custom_pins, use=True)
        else:
            session.use_custom_pins = False

        session.recompute()
        return _score_response(session)
    except SessionNotReadyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MatrixBuildError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/grid/scores", response_model=ScoreResponse)
async def compute_grid_scores(request: GridScoreRequest):
    """
    Score hexagon cells against grid attractors.

    Builds the full-network distance matrix on first use and reuses it
    for the rest of the session.
    """
    session = get_session()
    try:
        await session.ensure_full_matrix()

        session.set_analysis_mode(AnalysisMode.GRID)
        session.set_curve(request.curve)
        session.set_hex_cells(request.hex_cells)
        session.set_grid_attractors(request.attractors)

        session.recompute()
        return _score_response(session)
    except SessionNotReadyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MatrixBuildError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/measure", response_model=Optional[MeasurementResult])
async def measure(request: MeasureRequest):
    """
    Shortest street path between two arbitrary points.

    Independent of the distance matrices. Returns null when no path exists.
    """
    try:
        return get_session().measure(request.a, request.b)
    except SessionNotReadyError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/curve/sample", response_model=CurveSampleResponse)
async def sample_decay_curve(request: CurveSampleRequest):
    """Evenly spaced points of a decay curve for plotting."""
    max_distance = request.max_distance or get_settings().max_distance_default
    curve = create_decay_curve(request.curve)
    return CurveSampleResponse(
        mode=request.curve.mode,
        samples=sample_curve(curve, max_distance, steps=request.steps),
    )


@router.get("/session/status", response_model=SessionStatus)
async def session_status():
    """Current pipeline state, matrix availability and computing flags."""
    return get_session().status()
