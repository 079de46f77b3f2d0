"""
Query Orchestrator（对外操作的统一入口）。

关键思想：
- **流程由这里控制**：每个查询先经过 Freshness Controller 定版本，再交给 Query Engine
- **Query Engine 只读**：所有写入只发生在 Indexer（ingest）和 prune
- CLI / HTTP 等前端只做参数转换，不写业务逻辑

每个响应都带上实际命中的 package/version，以及降级时的 stale/warning。
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from functools import partial

import anyio

from crate_index.config import AppConfig
from crate_index.errors import InvalidQueryError
from crate_index.errors import IOFailureError
from crate_index.errors import RegistryUnavailableError
from crate_index.indexing.extractor import crate_dir
from crate_index.indexing.indexer import Indexer
from crate_index.query.engine import QueryEngine
from crate_index.registry.client import PackageRegistry
from crate_index.service.freshness import Resolution
from crate_index.service.freshness import parse_package_query
from crate_index.service.freshness import resolve_package
from crate_index.service.models import DefinitionListResponse
from crate_index.service.models import DefinitionResponse
from crate_index.service.models import FetchResponse
from crate_index.service.models import FileResponse
from crate_index.service.models import LatestResponse
from crate_index.service.models import PruneResponse
from crate_index.service.models import ReadmeResponse
from crate_index.service.models import SearchResponse
from crate_index.storage.base import IndexStore
from crate_index.storage.base import select_latest
from crate_index.storage.models import Kind
from crate_index.versions import is_valid_crate_name
from crate_index.versions import is_valid_version
from crate_index.versions import version_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryOrchestrator:
    """Orchestrator 运行时依赖集合。"""

    store: IndexStore
    registry: PackageRegistry
    indexer: Indexer
    engine: QueryEngine
    data_dir: str


def build_query_orchestrator(store: IndexStore, registry: PackageRegistry, config: AppConfig) -> QueryOrchestrator:
    """按配置装配 Indexer / QueryEngine（解析并发与网络并发分开限流）。"""
    indexer = Indexer(
        store=store,
        registry=registry,
        data_dir=config.data_dir,
        parse_limiter=anyio.CapacityLimiter(config.max_parse_concurrency),
        max_file_bytes=config.max_file_bytes,
        max_dependency_depth=config.max_dependency_depth,
    )
    engine = QueryEngine(store=store, max_results=config.max_results, max_reexport_depth=config.max_dependency_depth)
    return QueryOrchestrator(store=store, registry=registry, indexer=indexer, engine=engine, data_dir=config.data_dir)


async def fetch_crate(
    orchestrator: QueryOrchestrator,
    name: str,
    version: str | None = None,
    force: bool = False,
) -> FetchResponse:
    """ingest 指定版本；不给版本时先问 registry 最新版本。幂等。"""
    query = parse_package_query(name)
    if version is not None and query.version is not None and version != query.version:
        raise InvalidQueryError(f"Conflicting versions {query.version!r} and {version!r} for {query.name}")
    target = version or query.version
    if target is None:
        target = await orchestrator.registry.latest_version(query.name)
    summary = await orchestrator.indexer.ingest(query.name, target, force=force)
    return FetchResponse(package=summary.package, version=summary.version, summary=summary)


async def latest_version(orchestrator: QueryOrchestrator, name: str) -> LatestResponse:
    if not is_valid_crate_name(name):
        raise InvalidQueryError(f"Invalid crate name: {name!r}")
    indexed = await anyio.to_thread.run_sync(orchestrator.store.list_versions, name)
    indexed_versions = sorted((p.version for p in indexed), key=version_key)
    try:
        latest = await orchestrator.registry.latest_version(name)
    except RegistryUnavailableError as exc:
        local = select_latest(indexed)
        if local is None:
            raise
        warning = f"Registry unavailable ({exc}); newest locally indexed version is {local.version}"
        logger.warning(warning)
        return LatestResponse(
            package=name,
            version=local.version,
            stale=True,
            warning=warning,
            indexed=True,
            indexed_versions=indexed_versions,
        )
    return LatestResponse(
        package=name,
        version=latest,
        indexed=latest in indexed_versions,
        indexed_versions=indexed_versions,
    )


async def search_crate(
    orchestrator: QueryOrchestrator,
    query: str,
    pattern: str,
    include_reexports: bool = True,
) -> SearchResponse:
    resolution = await _resolve(orchestrator=orchestrator, query=query)
    result = await anyio.to_thread.run_sync(
        partial(
            orchestrator.engine.search,
            package=resolution.package,
            pattern=pattern,
            include_reexports=include_reexports,
        )
    )
    return SearchResponse(
        **_envelope(resolution),
        pattern=pattern,
        matches=result.matches,
        truncated=result.truncated,
    )


async def list_definitions(
    orchestrator: QueryOrchestrator,
    query: str,
    kind: Kind,
    pattern: str | None = None,
    include_reexports: bool = True,
) -> DefinitionListResponse:
    resolution = await _resolve(orchestrator=orchestrator, query=query)
    result = await anyio.to_thread.run_sync(
        partial(
            orchestrator.engine.list_definitions,
            package=resolution.package,
            kind=kind,
            pattern=pattern,
            include_reexports=include_reexports,
        )
    )
    return DefinitionListResponse(
        **_envelope(resolution),
        kind=kind,
        items=result.items,
        truncated=result.truncated,
    )


async def show_definition(orchestrator: QueryOrchestrator, definition_id: str) -> DefinitionResponse:
    detail = await anyio.to_thread.run_sync(orchestrator.engine.show, definition_id)
    return DefinitionResponse(
        package=detail.definition.package,
        version=detail.definition.version,
        definition=detail.definition,
        source=detail.source,
    )


async def read_file(
    orchestrator: QueryOrchestrator,
    query: str,
    path: str,
    start_line: int | None = None,
    end_line: int | None = None,
) -> FileResponse:
    resolution = await _resolve(orchestrator=orchestrator, query=query)
    file_slice = await anyio.to_thread.run_sync(
        partial(
            orchestrator.engine.read_file,
            package=resolution.package,
            path=path,
            start_line=start_line,
            end_line=end_line,
        )
    )
    return FileResponse(
        **_envelope(resolution),
        path=file_slice.path,
        start_line=file_slice.start_line,
        end_line=file_slice.end_line,
        total_lines=file_slice.total_lines,
        text=file_slice.text,
    )


async def read_readme(orchestrator: QueryOrchestrator, query: str) -> ReadmeResponse:
    resolution = await _resolve(orchestrator=orchestrator, query=query)
    readme = await anyio.to_thread.run_sync(orchestrator.engine.readme, resolution.package)
    return ReadmeResponse(**_envelope(resolution), path=readme.path, text=readme.text)


async def prune_crate(
    orchestrator: QueryOrchestrator,
    name: str,
    version: str,
    remove_source: bool = False,
) -> PruneResponse:
    """删除一个已索引版本（级联删除 definitions / files / edges）；可选同时删除解压目录。"""
    if not is_valid_crate_name(name):
        raise InvalidQueryError(f"Invalid crate name: {name!r}")
    if not is_valid_version(version):
        raise InvalidQueryError(f"Invalid semantic version: {version!r}")
    removed = await anyio.to_thread.run_sync(orchestrator.store.prune, name, version)
    source_removed = False
    if remove_source:
        source_root = crate_dir(data_dir=orchestrator.data_dir, name=name, version=version)
        source_removed = await anyio.to_thread.run_sync(_remove_tree, source_root)
    logger.info(f"Pruned {name}@{version}: removed={removed}, source_removed={source_removed}")
    return PruneResponse(package=name, version=version, removed=removed, source_removed=source_removed)


async def _resolve(orchestrator: QueryOrchestrator, query: str) -> Resolution:
    return await resolve_package(
        store=orchestrator.store,
        registry=orchestrator.registry,
        indexer=orchestrator.indexer,
        query=parse_package_query(query),
    )


def _envelope(resolution: Resolution) -> dict[str, object]:
    return {
        "package": resolution.package.name,
        "version": resolution.package.version,
        "stale": resolution.stale,
        "warning": resolution.warning,
    }


def _remove_tree(path: str) -> bool:
    if not os.path.isdir(path):
        return False
    try:
        shutil.rmtree(path)
    except OSError as exc:
        logger.error(f"Cannot remove {path}: {exc}")
        raise IOFailureError(f"Cannot remove {path}: {exc}") from exc
    return True
