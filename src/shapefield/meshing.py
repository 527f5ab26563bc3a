"""Meshing pipeline: synchronous rendering and background render jobs."""

from __future__ import annotations

import logging
import threading
from collections.abc import Hashable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass

import numpy as np

from shapefield.config import get_config
from shapefield.errors import JobConflictError, ResourceExhaustionError
from shapefield.kernel import Kernel, KernelMesh, Region
from shapefield.normals import MAX_SPLITTING_ANGLE, split_normals
from shapefield.tree import Tree

__all__ = ["MeshData", "MeshScheduler", "Region", "RenderJob", "render_mesh"]

logger = logging.getLogger(__name__)


@dataclass
class MeshData:
    """Marshaled triangle mesh."""

    positions: np.ndarray  # (N, 3) float64
    normals: np.ndarray  # (N, 3) float64
    indices: np.ndarray  # (3M,) uint32

    @classmethod
    def empty(cls) -> MeshData:
        return cls(
            positions=np.zeros((0, 3), dtype=np.float64),
            normals=np.zeros((0, 3), dtype=np.float64),
            indices=np.zeros(0, dtype=np.uint32),
        )

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    @property
    def triangle_count(self) -> int:
        return len(self.indices) // 3

    @property
    def is_empty(self) -> bool:
        return self.triangle_count == 0

    @property
    def triangles(self) -> np.ndarray:
        return self.indices.reshape(-1, 3)

    def bounds(self) -> tuple[np.ndarray, np.ndarray] | None:
        """Axis-aligned (lower, upper) corners, or None for an empty mesh."""
        if self.vertex_count == 0:
            return None
        return self.positions.min(axis=0), self.positions.max(axis=0)


def marshal_mesh(mesh: KernelMesh, splitting_angle: float = MAX_SPLITTING_ANGLE) -> MeshData:
    """Copy a kernel buffer into ``MeshData`` and compute split normals.

    The caller still owns *mesh* and must release it.
    """
    if mesh.tri_count == 0:
        return MeshData.empty()
    try:
        positions, triangles, normals = split_normals(
            np.asarray(mesh.vertices, dtype=np.float64), mesh.triangles, splitting_angle
        )
    except MemoryError as e:
        raise ResourceExhaustionError(f"Out of memory marshaling {mesh.tri_count} triangles") from e
    return MeshData(
        positions=positions,
        normals=normals,
        indices=np.asarray(triangles, dtype=np.uint32).reshape(-1),
    )


def render_mesh(
    tree: Tree, region: Region, resolution: float, splitting_angle: float = MAX_SPLITTING_ANGLE
) -> MeshData:
    """Polygonize *tree* over *region*, blocking until the mesh is ready."""
    kernel = tree.kernel
    mesh = kernel.render_mesh(tree.handle, region, resolution)
    try:
        return marshal_mesh(mesh, splitting_angle)
    finally:
        kernel.release_mesh(mesh)


def _render_worker(kernel: Kernel, tree: Tree, region: Region, resolution: float) -> KernelMesh:
    return kernel.render_mesh(tree.handle, region, resolution)


class RenderJob:
    """Handle to one background render.

    The result is consumed exactly once, through either ``poll()`` or
    ``wait()``. The job holds its own reference to the submitted tree until
    the computation has finished.
    """

    def __init__(
        self,
        scheduler: MeshScheduler,
        tree: Tree,
        region: Region,
        resolution: float,
        splitting_angle: float,
        target: Hashable | None,
    ) -> None:
        self.region = region
        self.resolution = resolution
        self.splitting_angle = splitting_angle
        self.target = target
        self._scheduler = scheduler
        self._tree = tree
        self._future: Future | None = None
        self._lock = threading.Lock()
        self._consumed = False
        self._discarded = False

    def _start(self, executor: ThreadPoolExecutor) -> None:
        self._future = executor.submit(
            _render_worker, self._tree.kernel, self._tree, self.region, self.resolution
        )

    @property
    def done(self) -> bool:
        return self._future is not None and self._future.done()

    @property
    def consumed(self) -> bool:
        return self._consumed

    @property
    def discarded(self) -> bool:
        return self._discarded

    def join(self, timeout: float | None = None) -> bool:
        """Block until the computation finishes without consuming the result."""
        finished, _ = wait_futures([self._future], timeout=timeout)
        return bool(finished)

    def _check_unconsumed(self) -> None:
        if self._consumed:
            raise JobConflictError("Render job result has already been consumed")

    def poll(self) -> MeshData | None:
        """Return the mesh if the job has finished, else None without blocking."""
        with self._lock:
            self._check_unconsumed()
            if not self.done:
                return None
            self._consumed = True
        return self._complete()

    def wait(self, timeout: float | None = None) -> MeshData:
        """Block until the job finishes and return its mesh."""
        with self._lock:
            self._check_unconsumed()
        if not self.join(timeout):
            raise TimeoutError(f"Render job did not finish within {timeout} s")
        with self._lock:
            self._check_unconsumed()
            self._consumed = True
        return self._complete()

    def discard(self) -> None:
        """Drop the result. The computation runs on; its buffer is freed on arrival."""
        with self._lock:
            if self._consumed:
                return
            self._consumed = True
            self._discarded = True
        self._scheduler._finished(self)
        self._future.add_done_callback(self._release_on_arrival)
        logger.debug("Render job for %r discarded", self.target)

    def _release_on_arrival(self, future: Future) -> None:
        try:
            if future.cancelled() or future.exception() is not None:
                return
            self._tree.kernel.release_mesh(future.result())
        finally:
            self._tree.dispose()

    def _complete(self) -> MeshData:
        kernel = self._tree.kernel
        try:
            mesh = self._future.result()
            try:
                data = marshal_mesh(mesh, self.splitting_angle)
            finally:
                kernel.release_mesh(mesh)
        finally:
            self._tree.dispose()
            self._scheduler._finished(self)
        logger.debug(
            "Render job for %r completed: %d vertices, %d triangles",
            self.target,
            data.vertex_count,
            data.triangle_count,
        )
        return data


class MeshScheduler:
    """Runs render jobs on a thread pool, at most one outstanding job per target."""

    def __init__(self, max_workers: int | None = None) -> None:
        workers = max_workers if max_workers is not None else get_config().max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="shapefield-mesh"
        )
        self._lock = threading.Lock()
        self._jobs: list[RenderJob] = []
        self._targets: dict[Hashable, RenderJob] = {}
        self._closed = False

    def __enter__(self) -> MeshScheduler:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._jobs)

    def outstanding(self, target: Hashable) -> RenderJob | None:
        with self._lock:
            return self._targets.get(target)

    def schedule(
        self,
        tree: Tree,
        region: Region,
        resolution: float,
        splitting_angle: float = MAX_SPLITTING_ANGLE,
        target: Hashable | None = None,
    ) -> RenderJob:
        """Start rendering *tree* in the background.

        Raises ``JobConflictError`` if *target* already has an outstanding job.
        """
        with self._lock:
            if self._closed:
                raise JobConflictError("Mesh scheduler has been shut down")
            if target is not None and target in self._targets:
                raise JobConflictError(f"A render job for {target!r} is already outstanding")
            job = RenderJob(self, tree.retain(), region, resolution, splitting_angle, target)
            self._jobs.append(job)
            if target is not None:
                self._targets[target] = job
            job._start(self._executor)
        logger.debug("Scheduled render job for %r at resolution %s", target, resolution)
        return job

    def _finished(self, job: RenderJob) -> None:
        with self._lock:
            if job in self._jobs:
                self._jobs.remove(job)
            if job.target is not None and self._targets.get(job.target) is job:
                del self._targets[job.target]

    def shutdown(self, wait: bool = True) -> None:
        """Discard every unconsumed job and stop the worker threads."""
        with self._lock:
            self._closed = True
            jobs = list(self._jobs)
        for job in jobs:
            job.discard()
        self._executor.shutdown(wait=wait)
        if jobs:
            logger.debug("Scheduler shut down, discarded %d job(s)", len(jobs))
