"""
Distance matrix construction.

The matrix holds network distances from a set of source nodes to every node
they reach. Building it means one full Dijkstra run per source, which is the
dominant cost of an analysis, so the work runs in a background worker while
the event loop keeps serving requests and forwards throttled progress.
"""

import asyncio
import logging
import multiprocessing
import queue
import time
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from types import MappingProxyType
from typing import Callable, Iterable, Iterator, Mapping, Optional

from accessmap.models.schemas import AnalysisMode, Building, MatrixProgress
from accessmap.services.matrix.worker import (
    DEFAULT_PROGRESS_STEP,
    build_worker_input,
    run_matrix_worker,
)
from accessmap.services.network.graph import StreetGraph

logger = logging.getLogger(__name__)

WORKER_KINDS = ("thread", "process")


class MatrixBuildError(RuntimeError):
    """Raised when the background matrix computation fails."""


class DistanceMatrix:
    """
    Immutable sparse two-level mapping: from node -> (to node -> distance).

    A missing entry means unreachable or not computed. Lookups return None
    for it; callers must skip such pairs rather than treat them as zero.
    """

    def __init__(self, rows: Mapping[str, Mapping[str, float]]):
        self._rows = MappingProxyType(
            {source: MappingProxyType(dict(row)) for source, row in rows.items()}
        )

    @classmethod
    def from_serialized(cls, pairs: Iterable) -> "DistanceMatrix":
        """Rebuild from the worker's array-of-pairs form."""
        rows = {}
        for source_id, dist_pairs in pairs:
            rows[source_id] = {target_id: float(dist) for target_id, dist in dist_pairs}
        return cls(rows)

    def to_serialized(self) -> list:
        return [
            [source, [[target, dist] for target, dist in row.items()]]
            for source, row in self._rows.items()
        ]

    def get(self, from_id: str, to_id: str) -> Optional[float]:
        row = self._rows.get(from_id)
        if row is None:
            return None
        return row.get(to_id)

    def row(self, from_id: str) -> Optional[Mapping[str, float]]:
        return self._rows.get(from_id)

    @property
    def sources(self) -> list[str]:
        return list(self._rows)

    def __contains__(self, from_id: object) -> bool:
        return from_id in self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[str]:
        return iter(self._rows)

    def entry_count(self) -> int:
        return sum(len(row) for row in self._rows.values())


def residential_source_nodes(buildings: Iterable[Building]) -> list[str]:
    """Unique nearest nodes of residential buildings, in first-seen order."""
    seen: dict[str, None] = {}
    for building in buildings:
        if building.is_residential and building.nearest_node_id:
            seen.setdefault(building.nearest_node_id, None)
    return list(seen)


ProgressCallback = Callable[[MatrixProgress], None]


def _start_manager():
    """Start a manager process and create the queue the worker reports on."""
    manager = multiprocessing.Manager()
    return manager, manager.Queue()


def _drain_channel(channel) -> list[dict]:
    """Take every message currently waiting on the channel."""
    messages = []
    while True:
        try:
            messages.append(channel.get_nowait())
        except queue.Empty:
            return messages


class DistanceMatrixBuilder:
    """
    Runs matrix construction off the event loop.

    worker_kind 'thread' uses a ThreadPoolExecutor and an in-process queue;
    'process' uses a ProcessPoolExecutor with a multiprocessing manager queue
    so the Dijkstra runs are not bound by the GIL. In both cases only plain
    dicts and lists cross the boundary.
    """

    def __init__(
        self,
        worker_kind: str = "thread",
        poll_interval: float = 0.05,
        progress_step: int = DEFAULT_PROGRESS_STEP,
    ):
        if worker_kind not in WORKER_KINDS:
            raise ValueError(f"Unknown matrix worker kind: {worker_kind!r}")

        self.worker_kind = worker_kind
        self.poll_interval = poll_interval
        self.progress_step = progress_step

    async def build(
        self,
        graph: StreetGraph,
        source_ids: Iterable[str],
        on_progress: Optional[ProgressCallback] = None,
        mode: AnalysisMode = AnalysisMode.BUILDINGS,
    ) -> DistanceMatrix:
        """
        Compute the distance matrix for the given sources.

        Args:
            graph: Street graph
            source_ids: Origin node ids (duplicates are dropped)
            on_progress: Called on the event loop with each progress update
            mode: Analysis mode the matrix is built for, echoed in progress

        Returns:
            The reconstituted DistanceMatrix

        Raises:
            MatrixBuildError: If the worker fails or returns no result
        """
        sources = list(dict.fromkeys(source_ids))
        payload = build_worker_input(graph, sources)

        logger.info(
            "Distance matrix build started (mode=%s sources=%d nodes=%d worker=%s)",
            mode.value,
            len(sources),
            graph.node_count,
            self.worker_kind,
        )
        start_time = time.time()

        if self.worker_kind == "process":
            loop = asyncio.get_running_loop()
            # Manager start-up and shutdown are blocking IPC; keep them off the loop
            manager, channel = await loop.run_in_executor(None, _start_manager)
            executor = ProcessPoolExecutor(max_workers=1)
            try:
                matrix = await self._run(executor, channel, payload, on_progress, mode, offload=True)
            finally:
                executor.shutdown(wait=False)
                await loop.run_in_executor(None, manager.shutdown)
        else:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="matrix-worker")
            try:
                matrix = await self._run(executor, queue.Queue(), payload, on_progress, mode)
            finally:
                executor.shutdown(wait=False)

        logger.info(
            "Distance matrix build finished in %.1fs (mode=%s rows=%d entries=%d)",
            time.time() - start_time,
            mode.value,
            len(matrix),
            matrix.entry_count(),
        )
        return matrix

    async def _run(
        self,
        executor: Executor,
        channel,
        payload: dict,
        on_progress: Optional[ProgressCallback],
        mode: AnalysisMode,
        offload: bool = False,
    ) -> DistanceMatrix:
        """
        Run the worker and forward its messages until it finishes.

        With offload set, submitting the job and draining the channel run in
        the default executor, since both are blocking calls on manager proxies
        and process pools.
        """
        loop = asyncio.get_running_loop()
        if offload:
            submitted = await loop.run_in_executor(
                None, executor.submit, run_matrix_worker, payload, channel, self.progress_step
            )
            future = asyncio.wrap_future(submitted)
        else:
            future = loop.run_in_executor(
                executor, run_matrix_worker, payload, channel, self.progress_step
            )

        result_message = None
        while True:
            # Check completion before draining so nothing posted is missed
            finished = future.done()

            if offload:
                messages = await loop.run_in_executor(None, _drain_channel, channel)
            else:
                messages = _drain_channel(channel)

            for message in messages:
                if message.get("type") == "progress":
                    self._report_progress(on_progress, message["percent"], mode)
                elif message.get("type") == "result":
                    result_message = message

            if finished:
                break
            await asyncio.sleep(self.poll_interval)

        try:
            await future
        except Exception as e:
            logger.exception("Distance matrix worker failed")
            raise MatrixBuildError(f"Distance matrix worker failed: {e}") from e

        if result_message is None:
            raise MatrixBuildError("Distance matrix worker finished without a result")

        return DistanceMatrix.from_serialized(result_message["matrix"])

    def _report_progress(
        self,
        on_progress: Optional[ProgressCallback],
        percent: int,
        mode: AnalysisMode,
    ):
        """Report progress through callback if available."""
        logger.debug("Matrix progress (mode=%s): %d%%", mode.value, percent)
        if on_progress:
            on_progress(
                MatrixProgress(
                    stage="matrix",
                    percent=percent,
                    message=f"Computing shortest paths... {percent}%",
                    mode=mode,
                )
            )
