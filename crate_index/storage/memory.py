"""
内存版 Index Store：只用于本地运行 / 单元测试，不落盘。

原子性：一次 `put` 先在锁外构建完整的 generation，再在锁内一次性替换，
读者只会看到替换前或替换后的状态。
"""

from __future__ import annotations

import threading
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from crate_index.storage.base import filter_definitions
from crate_index.storage.base import select_latest
from crate_index.storage.base import slice_lines
from crate_index.storage.models import Definition
from crate_index.storage.models import DependencyEdge
from crate_index.storage.models import Kind
from crate_index.storage.models import PackageStats
from crate_index.storage.models import PackageVersion
from crate_index.storage.models import SourceFile

PackageKey = tuple[str, str]


@dataclass(frozen=True)
class _Generation:
    package: PackageVersion
    definitions: dict[str, Definition]
    files: dict[str, SourceFile]
    edges: tuple[DependencyEdge, ...]
    by_kind: dict[Kind, tuple[Definition, ...]] = field(default_factory=dict)


class InMemoryIndexStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._generations: dict[PackageKey, _Generation] = {}
        self._owner_by_id: dict[str, PackageKey] = {}

    def put(
        self,
        package: PackageVersion,
        definitions: Sequence[Definition],
        files: Sequence[SourceFile],
        edges: Sequence[DependencyEdge],
    ) -> None:
        key = (package.name, package.version)
        by_id = {d.id: d for d in definitions}
        by_kind: dict[Kind, list[Definition]] = {}
        for definition in by_id.values():
            by_kind.setdefault(definition.kind, []).append(definition)
        generation = _Generation(
            package=package,
            definitions=by_id,
            files={f.path: f for f in files},
            edges=tuple(edges),
            by_kind={kind: tuple(items) for kind, items in by_kind.items()},
        )
        with self._lock:
            previous = self._generations.get(key)
            if previous is not None:
                for definition_id in previous.definitions:
                    self._owner_by_id.pop(definition_id, None)
            self._generations[key] = generation
            for definition_id in by_id:
                self._owner_by_id[definition_id] = key

    def get_package(self, name: str, version: str) -> PackageVersion | None:
        generation = self._generations.get((name, version))
        return generation.package if generation is not None else None

    def list_versions(self, name: str) -> list[PackageVersion]:
        with self._lock:
            generations = list(self._generations.values())
        return [g.package for g in generations if g.package.name == name]

    def latest_package(self, name: str) -> PackageVersion | None:
        return select_latest(self.list_versions(name))

    def prune(self, name: str, version: str) -> bool:
        with self._lock:
            generation = self._generations.pop((name, version), None)
            if generation is None:
                return False
            for definition_id in generation.definitions:
                self._owner_by_id.pop(definition_id, None)
        return True

    def get_by_id(self, definition_id: str) -> Definition | None:
        with self._lock:
            key = self._owner_by_id.get(definition_id)
            generation = self._generations.get(key) if key is not None else None
        if generation is None:
            return None
        return generation.definitions.get(definition_id)

    def scan(
        self,
        name: str,
        version: str | None,
        kind: Kind,
        name_pattern: str | None = None,
    ) -> list[Definition]:
        generation = self._resolve(name, version)
        if generation is None:
            return []
        return filter_definitions(generation.by_kind.get(kind, ()), name_pattern)

    def get_source_file(self, name: str, version: str, path: str) -> SourceFile | None:
        generation = self._generations.get((name, version))
        if generation is None:
            return None
        return generation.files.get(path)

    def iter_source_files(self, name: str, version: str) -> Iterator[SourceFile]:
        generation = self._generations.get((name, version))
        if generation is None:
            return iter(())
        return iter(sorted(generation.files.values(), key=lambda f: f.path))

    def read_file(
        self,
        name: str,
        version: str,
        path: str,
        start_line: int | None = None,
        end_line: int | None = None,
    ) -> str | None:
        source = self.get_source_file(name, version, path)
        if source is None:
            return None
        return slice_lines(source.content, start_line, end_line)

    def dependency_edges(self, name: str, version: str) -> list[DependencyEdge]:
        generation = self._generations.get((name, version))
        if generation is None:
            return []
        return sorted(generation.edges, key=lambda e: e.target)

    def package_stats(self, name: str, version: str) -> PackageStats:
        generation = self._generations.get((name, version))
        if generation is None:
            return PackageStats(file_count=0)
        return PackageStats(
            file_count=len(generation.files),
            kind_counts={kind: len(items) for kind, items in generation.by_kind.items()},
        )

    def _resolve(self, name: str, version: str | None) -> _Generation | None:
        if version is None:
            latest = self.latest_package(name)
            if latest is None:
                return None
            version = latest.version
        return self._generations.get((name, version))
