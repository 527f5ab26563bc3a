"""Host-side tick loop: evaluate root shapes and keep their meshes current."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from shapefield.config import get_config
from shapefield.errors import InvalidArgumentError, JobConflictError, ResourceExhaustionError
from shapefield.meshing import MeshData, MeshScheduler, Region, RenderJob, render_mesh
from shapefield.scene import ShapeNode
from shapefield.warning_policy import emit_warning

logger = logging.getLogger(__name__)

# (fingerprint, tree node id, region, resolution, splitting angle)
RenderKey = tuple[str, int | None, Region, float, float]


class SceneDriver:
    """Drives a forest of root shape nodes, one tick at a time.

    Synchronous mode renders inside ``tick()``. Background mode hands renders
    to a ``MeshScheduler`` and collects finished jobs on later ticks; a root
    never has more than one job in flight.
    """

    def __init__(
        self,
        roots: Iterable[ShapeNode],
        scheduler: MeshScheduler | None = None,
        background: bool = False,
    ) -> None:
        self.roots = list(roots)
        self.background = background or scheduler is not None
        self._owns_scheduler = scheduler is None and self.background
        if scheduler is None and self.background:
            scheduler = MeshScheduler()
        self.scheduler = scheduler
        self.meshes: dict[str, MeshData] = {}
        self.tick_count = 0
        self._render_keys: dict[str, RenderKey] = {}
        self._jobs: dict[str, tuple[RenderJob, RenderKey]] = {}
        self._closed = False

    def __enter__(self) -> SceneDriver:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def outstanding(self) -> int:
        return len(self._jobs)

    def region_for(self, root: ShapeNode) -> Region:
        return Region.from_center_size(root.world_position(), root.bounds_size)

    def tick(self) -> dict[str, MeshData]:
        """Run one update; return the meshes that completed during it.

        A root whose render settings are rejected loses its mesh and is
        reported as W05; the other roots are updated as usual.
        """
        self.tick_count += 1
        completed = self._collect() if self.background else {}
        for root in self.roots:
            if not root.enabled:
                continue
            try:
                self._update(root, completed)
            except InvalidArgumentError as e:
                self.meshes.pop(root.name, None)
                self._render_keys.pop(root.name, None)
                emit_warning(
                    "W05",
                    f"Render of {root.name!r} skipped: {e}",
                    policy=get_config().warning_policy,
                )
        return completed

    def _update(self, root: ShapeNode, completed: dict[str, MeshData]) -> None:
        tree = root.evaluate()
        region = self.region_for(root)
        tree_id = tree.id if tree is not None else None
        key = (root.fingerprint(), tree_id, region, root.resolution, root.splitting_angle)
        if self._render_keys.get(root.name) == key:
            return
        if tree is None:
            self._store(root.name, MeshData.empty(), key, completed)
        elif self.background:
            self._schedule(root, key)
        else:
            self._render_now(root, key, completed)

    def _store(
        self, name: str, mesh: MeshData, key: RenderKey, completed: dict[str, MeshData]
    ) -> None:
        self.meshes[name] = mesh
        self._render_keys[name] = key
        completed[name] = mesh

    def _render_now(self, root: ShapeNode, key: RenderKey, completed: dict[str, MeshData]) -> None:
        region = key[2]
        try:
            mesh = render_mesh(root.tree, region, root.resolution, root.splitting_angle)
        except ResourceExhaustionError as e:
            emit_warning(
                "W04",
                f"Render of {root.name!r} failed ({e}); retrying next tick",
                policy=get_config().warning_policy,
            )
            return
        self._store(root.name, mesh, key, completed)

    def _schedule(self, root: ShapeNode, key: RenderKey) -> None:
        pending = self._jobs.get(root.name)
        if pending is not None:
            if pending[1] != key:
                emit_warning(
                    "W03",
                    f"Render of {root.name!r} skipped: previous job still outstanding",
                    policy=get_config().warning_policy,
                )
            return
        try:
            job = self.scheduler.schedule(
                root.tree, key[2], root.resolution, root.splitting_angle, target=root.name
            )
        except JobConflictError as e:
            emit_warning(
                "W03", f"Render of {root.name!r} skipped: {e}", policy=get_config().warning_policy
            )
            return
        self._jobs[root.name] = (job, key)

    def _collect(self) -> dict[str, MeshData]:
        completed: dict[str, MeshData] = {}
        for name, (job, key) in list(self._jobs.items()):
            if not job.done:
                continue
            del self._jobs[name]
            try:
                mesh = job.poll()
            except ResourceExhaustionError as e:
                emit_warning(
                    "W04",
                    f"Render of {name!r} failed ({e}); retrying next tick",
                    policy=get_config().warning_policy,
                )
                continue
            self._store(name, mesh, key, completed)
        return completed

    def wait_idle(self, timeout: float | None = None) -> dict[str, MeshData]:
        """Block until every outstanding job has finished and collect the results."""
        for job, _ in list(self._jobs.values()):
            job.join(timeout)
        return self._collect() if self.background else {}

    def close(self) -> None:
        """Discard pending jobs, stop an owned scheduler and free node caches."""
        if self._closed:
            return
        self._closed = True
        for job, _ in self._jobs.values():
            job.discard()
        self._jobs.clear()
        if self._owns_scheduler:
            self.scheduler.shutdown()
        for root in self.roots:
            root.dispose()
        logger.debug("Scene driver closed after %d tick(s)", self.tick_count)
