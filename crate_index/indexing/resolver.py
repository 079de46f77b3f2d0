from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

import anyio

from crate_index.errors import CrateIndexError
from crate_index.indexing.manifest import CrateManifest
from crate_index.indexing.manifest import normalize_crate_name
from crate_index.indexing.models import DependencyOutcome
from crate_index.indexing.models import IngestSummary
from crate_index.registry.client import PackageRegistry
from crate_index.storage.base import IndexStore
from crate_index.storage.models import DependencyEdge
from crate_index.versions import newest_satisfying

logger = logging.getLogger(__name__)

IngestFn = Callable[[str, str], Awaitable[IngestSummary]]


@dataclass(frozen=True)
class DependencyTarget:
    package: str
    requirement: str = "*"


def discover_reexports(roots: Iterable[str], manifest: CrateManifest, package: str) -> list[DependencyTarget]:
    """只保留 Cargo.toml 里确实声明过的依赖（`pub use std::...` 之类会被过滤掉）。"""
    targets: dict[str, DependencyTarget] = {}
    own = normalize_crate_name(package)
    for root in roots:
        spec = manifest.find_dependency(root)
        if spec is None:
            continue
        if normalize_crate_name(spec.package) == own:
            continue
        targets.setdefault(spec.package, DependencyTarget(package=spec.package, requirement=spec.requirement))
    return sorted(targets.values(), key=lambda t: t.package)


class DependencyResolver:
    def __init__(self, store: IndexStore, registry: PackageRegistry, max_depth: int) -> None:
        if max_depth < 0:
            raise ValueError("max_depth must be >= 0")
        self._store = store
        self._registry = registry
        self._max_depth = max_depth

    async def resolve(self, root: IngestSummary, ingest: IngestFn) -> list[DependencyOutcome]:
        """
        按层遍历 re-export 依赖图。

        - 深度上限 `max_depth`，visited 按 crate 名去重（防环）
        - 同一层的目标并发处理
        - 单个依赖失败只记录为 failed，不影响父 ingestion，也不在本次调用内重试
        """
        visited = {normalize_crate_name(root.package)}
        frontier = await anyio.to_thread.run_sync(self._store.dependency_edges, root.package, root.version)
        outcomes: list[DependencyOutcome] = []
        depth = 1
        while frontier and depth <= self._max_depth:
            level: list[DependencyEdge] = []
            for edge in frontier:
                key = normalize_crate_name(edge.target)
                if key in visited:
                    continue
                visited.add(key)
                level.append(edge)
            if not level:
                break

            results: list[tuple[DependencyOutcome, list[DependencyEdge]] | None] = [None] * len(level)

            async def run_one(index: int, edge: DependencyEdge, level_depth: int) -> None:
                results[index] = await self._resolve_one(edge=edge, depth=level_depth, ingest=ingest)

            async with anyio.create_task_group() as tg:
                for index, edge in enumerate(level):
                    tg.start_soon(run_one, index, edge, depth)

            next_frontier: list[DependencyEdge] = []
            for result in results:
                if result is None:
                    continue
                outcome, edges = result
                outcomes.append(outcome)
                next_frontier.extend(edges)
            frontier = next_frontier
            depth += 1
        return outcomes

    async def _resolve_one(
        self,
        edge: DependencyEdge,
        depth: int,
        ingest: IngestFn,
    ) -> tuple[DependencyOutcome, list[DependencyEdge]]:
        target = edge.target
        try:
            indexed = await anyio.to_thread.run_sync(self._store.list_versions, target)
            match = newest_satisfying([p.version for p in indexed], edge.requirement)
            if match is not None:
                edges = await anyio.to_thread.run_sync(self._store.dependency_edges, target, match)
                outcome = DependencyOutcome(
                    package=target,
                    requirement=edge.requirement,
                    status="skipped",
                    version=match,
                    depth=depth,
                )
                return outcome, edges

            version = await self._registry.latest_version(target)
            summary = await ingest(target, version)
            edges = await anyio.to_thread.run_sync(self._store.dependency_edges, target, version)
        except CrateIndexError as exc:
            logger.warning(f"Dependency {target} ({edge.requirement}) of {edge.package}@{edge.version} failed: {exc}")
            outcome = DependencyOutcome(
                package=target,
                requirement=edge.requirement,
                status="failed",
                depth=depth,
                error=f"{exc.kind}: {exc}",
            )
            return outcome, []

        outcome = DependencyOutcome(
            package=target,
            requirement=edge.requirement,
            status="reused" if summary.reused else "ingested",
            version=version,
            depth=depth,
        )
        return outcome, edges

