from __future__ import annotations

import hashlib
import logging
import os
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial

import anyio

from crate_index.errors import InvalidQueryError
from crate_index.errors import ParseFailureError
from crate_index.indexing.extractor import crate_dir
from crate_index.indexing.extractor import extract_archive
from crate_index.indexing.file_scanner import scan_source_files
from crate_index.indexing.manifest import read_manifest
from crate_index.indexing.models import DefinitionDraft
from crate_index.indexing.models import Diagnostic
from crate_index.indexing.models import IngestSummary
from crate_index.indexing.parser import ParsedFile
from crate_index.indexing.parser import parse_file
from crate_index.indexing.resolver import DependencyResolver
from crate_index.indexing.resolver import discover_reexports
from crate_index.infra.locks import KeyedLock
from crate_index.registry.client import PackageRegistry
from crate_index.storage.base import IndexStore
from crate_index.storage.models import Definition
from crate_index.storage.models import DependencyEdge
from crate_index.storage.models import Member
from crate_index.storage.models import PackageVersion
from crate_index.storage.models import SourceFile
from crate_index.versions import is_valid_crate_name
from crate_index.versions import is_valid_version

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 1_000_000
ALLOWED_EXTENSIONS = {".rs"}
ID_LENGTH = 16


def definition_id(package: str, version: str, path: str, start_byte: int, end_byte: int, kind: str) -> str:
    raw = "\0".join([package, version, path, str(start_byte), str(end_byte), kind])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:ID_LENGTH]


@dataclass(frozen=True)
class _FileResult:
    path: str
    content: str | None
    parsed: ParsedFile | None
    error: str | None


class Indexer:
    def __init__(
        self,
        store: IndexStore,
        registry: PackageRegistry,
        data_dir: str,
        parse_limiter: anyio.CapacityLimiter,
        max_file_bytes: int = MAX_FILE_BYTES,
        max_dependency_depth: int = 5,
        locks: KeyedLock | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._data_dir = data_dir
        self._parse_limiter = parse_limiter
        self._max_file_bytes = max_file_bytes
        self._locks = locks or KeyedLock()
        self._resolver = DependencyResolver(store=store, registry=registry, max_depth=max_dependency_depth)

    async def ingest(
        self,
        name: str,
        version: str,
        *,
        force: bool = False,
        follow_reexports: bool = True,
    ) -> IngestSummary:
        if not is_valid_crate_name(name):
            raise InvalidQueryError(f"Invalid crate name: {name!r}")
        if not is_valid_version(version):
            raise InvalidQueryError(f"Invalid semantic version: {version!r}")

        async with self._locks.hold((name, version)):
            existing = await anyio.to_thread.run_sync(self._store.get_package, name, version)
            if existing is not None and not force:
                summary = await self._reused_summary(package=existing)
            else:
                summary = await self._ingest_locked(name=name, version=version)

        if follow_reexports:
            outcomes = await self._resolver.resolve(root=summary, ingest=self._ingest_dependency)
            summary = summary.model_copy(update={"dependencies": outcomes})
        return summary

    async def _ingest_dependency(self, name: str, version: str) -> IngestSummary:
        return await self.ingest(name, version, follow_reexports=False)

    async def _ingest_locked(self, name: str, version: str) -> IngestSummary:
        logger.info(f"Ingesting {name}@{version}")
        source_root = crate_dir(data_dir=self._data_dir, name=name, version=version)
        if not os.path.isdir(source_root):
            archive = await self._registry.fetch_archive(name, version)
            await anyio.to_thread.run_sync(extract_archive, archive, source_root, f"{name}-{version}")

        paths = await anyio.to_thread.run_sync(
            partial(
                scan_source_files,
                source_root=source_root,
                allowed_extensions=ALLOWED_EXTENSIONS,
                max_bytes=self._max_file_bytes,
            )
        )
        results = await self._parse_all(source_root=source_root, paths=paths)
        manifest = await anyio.to_thread.run_sync(read_manifest, source_root)

        definitions: list[Definition] = []
        files: list[SourceFile] = []
        diagnostics: list[Diagnostic] = []
        roots: list[str] = []
        for result in results:
            if result.content is not None:
                files.append(SourceFile(package=name, version=version, path=result.path, content=result.content))
            if result.error is not None:
                logger.warning(f"Skipping {name}@{version}/{result.path}: {result.error}")
                diagnostics.append(Diagnostic(path=result.path, message=result.error))
                continue
            if result.parsed is None:
                continue
            definitions.extend(_assign_ids(package=name, version=version, drafts=result.parsed.definitions))
            roots.extend(r for r in result.parsed.reexports if r not in roots)

        targets = discover_reexports(roots=roots, manifest=manifest, package=name)
        edges = [
            DependencyEdge(package=name, version=version, target=t.package, requirement=t.requirement) for t in targets
        ]
        package = PackageVersion(
            name=name,
            version=version,
            ingested_at=datetime.now(timezone.utc),
            source_root=source_root,
        )
        await anyio.to_thread.run_sync(self._store.put, package, definitions, files, edges)

        kind_counts = Counter(d.kind for d in definitions)
        logger.info(
            f"Indexed {name}@{version}: {len(files)} files, {len(definitions)} definitions, "
            f"{len(diagnostics)} diagnostics, re-exports={[t.package for t in targets]}"
        )
        return IngestSummary(
            package=name,
            version=version,
            source_root=source_root,
            file_count=len(files),
            definition_count=len(definitions),
            kind_counts=dict(kind_counts),
            diagnostics=diagnostics,
            reexports=[t.package for t in targets],
        )

    async def _parse_all(self, source_root: str, paths: list[str]) -> list[_FileResult]:
        # 结果按扫描顺序落位，保证 definitions 的顺序与并发调度无关
        results: list[_FileResult | None] = [None] * len(paths)

        async def run_one(index: int, path: str) -> None:
            results[index] = await anyio.to_thread.run_sync(
                partial(_read_and_parse, source_root=source_root, path=path),
                limiter=self._parse_limiter,
            )

        async with anyio.create_task_group() as tg:
            for index, path in enumerate(paths):
                tg.start_soon(run_one, index, path)
        return [r for r in results if r is not None]

    async def _reused_summary(self, package: PackageVersion) -> IngestSummary:
        stats = await anyio.to_thread.run_sync(self._store.package_stats, package.name, package.version)
        edges = await anyio.to_thread.run_sync(self._store.dependency_edges, package.name, package.version)
        logger.info(f"{package.name}@{package.version} already indexed, reusing")
        return IngestSummary(
            package=package.name,
            version=package.version,
            source_root=package.source_root,
            file_count=stats.file_count,
            definition_count=stats.definition_count,
            kind_counts=stats.kind_counts,
            reexports=[e.target for e in edges],
            reused=True,
        )


def _read_and_parse(source_root: str, path: str) -> _FileResult:
    full_path = os.path.join(source_root, *path.split("/"))
    try:
        with open(full_path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        return _FileResult(path=path, content=None, parsed=None, error=f"{path}: unreadable ({exc})")
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError:
        content = None
    try:
        parsed = parse_file(path=path, source=raw)
    except ParseFailureError as exc:
        return _FileResult(path=path, content=content, parsed=None, error=str(exc))
    return _FileResult(path=path, content=content, parsed=parsed, error=None)


def _assign_ids(package: str, version: str, drafts: list[DefinitionDraft]) -> list[Definition]:
    ids_by_anchor: dict[tuple[str, int, int], str] = {}
    definitions: list[Definition] = []
    for draft in drafts:
        definition_key = definition_id(
            package=package,
            version=version,
            path=draft.path,
            start_byte=draft.start_byte,
            end_byte=draft.end_byte,
            kind=draft.kind.value,
        )
        ids_by_anchor[(draft.kind.value, draft.start_byte, draft.end_byte)] = definition_key
        parent_id = None
        if draft.parent is not None:
            parent_kind, parent_start, parent_end = draft.parent
            parent_id = ids_by_anchor.get((parent_kind.value, parent_start, parent_end))
        definitions.append(
            Definition(
                id=definition_key,
                package=package,
                version=version,
                kind=draft.kind,
                name=draft.name,
                path=draft.path,
                start_line=draft.start_line,
                end_line=draft.end_line,
                start_byte=draft.start_byte,
                end_byte=draft.end_byte,
                signature=draft.signature,
                docs=draft.docs,
                visibility=draft.visibility,
                parent_id=parent_id,
                trait_name=draft.trait_name,
                qualifier=draft.qualifier,
                members=[Member(name=m.name, detail=m.detail, docs=m.docs) for m in draft.members],
            )
        )
    return definitions
