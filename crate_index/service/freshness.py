"""
Freshness Controller：决定一次查询落在哪个已索引版本上。

两种状态：
- Pinned（`name@1.2.3` 或 `name-1.2.3`）：完全不访问 registry，本地没有就 NotIndexed
- NameOnly（只有名字）：问 registry 最新版本；本地没有就先同步 ingest；
  registry 不可达时退回本地最新版本，并带上 stale 警告

决策只依赖本次请求的输入（registry 响应 + store 内容），不缓存任何进程级状态。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal

import anyio

from crate_index.errors import InvalidQueryError
from crate_index.errors import IOFailureError
from crate_index.errors import NotIndexedError
from crate_index.errors import RegistryUnavailableError
from crate_index.indexing.indexer import Indexer
from crate_index.indexing.models import IngestSummary
from crate_index.registry.client import PackageRegistry
from crate_index.storage.base import IndexStore
from crate_index.storage.models import PackageVersion
from crate_index.versions import SEMVER_PATTERN
from crate_index.versions import is_valid_crate_name
from crate_index.versions import is_valid_version

logger = logging.getLogger(__name__)

# 名字部分非贪婪：最早一个“后面跟着完整语义化版本”的 `-` 就是分隔点
_LEGACY_PINNED_RE = re.compile(rf"^(?P<name>[A-Za-z][A-Za-z0-9_-]*?)-(?P<version>{SEMVER_PATTERN})$")

Mode = Literal["name_only", "pinned"]


@dataclass(frozen=True)
class PackageQuery:
    name: str
    version: str | None = None

    @property
    def pinned(self) -> bool:
        return self.version is not None

    def __str__(self) -> str:
        return f"{self.name}@{self.version}" if self.version is not None else self.name


@dataclass(frozen=True)
class Resolution:
    package: PackageVersion
    mode: Mode
    stale: bool = False
    warning: str | None = None
    ingested: IngestSummary | None = None


def parse_package_query(text: str) -> PackageQuery:
    """
    解析查询字符串。

    - `name@version`：总是 Pinned
    - `name-MAJOR.MINOR.PATCH[-pre][+build]`：后缀是完整语义化版本时视为 Pinned
      （crate 名不能包含 `.`，所以不会有歧义）
    - 其他：NameOnly，例如 `tokio-1`、`x86-64` 都按名字处理
    """
    value = text.strip()
    if not value:
        raise InvalidQueryError("Package query must not be empty")
    if "@" in value:
        name, _, version = value.partition("@")
        if not is_valid_crate_name(name):
            raise InvalidQueryError(f"Invalid crate name: {name!r}")
        if not is_valid_version(version):
            raise InvalidQueryError(f"Invalid semantic version: {version!r}")
        return PackageQuery(name=name, version=version)
    match = _LEGACY_PINNED_RE.match(value)
    if match is not None and is_valid_crate_name(match.group("name")):
        return PackageQuery(name=match.group("name"), version=match.group("version"))
    if not is_valid_crate_name(value):
        raise InvalidQueryError(f"Invalid crate name: {value!r}")
    return PackageQuery(name=value)


async def resolve_package(
    store: IndexStore,
    registry: PackageRegistry,
    indexer: Indexer,
    query: PackageQuery,
) -> Resolution:
    if query.version is not None:
        package = await anyio.to_thread.run_sync(store.get_package, query.name, query.version)
        if package is None:
            raise NotIndexedError(f"{query.name}@{query.version} is not indexed (pinned queries never fetch)")
        return Resolution(package=package, mode="pinned")

    try:
        latest = await registry.latest_version(query.name)
        package = await anyio.to_thread.run_sync(store.get_package, query.name, latest)
        ingested: IngestSummary | None = None
        if package is None:
            ingested = await indexer.ingest(query.name, latest)
            package = await anyio.to_thread.run_sync(store.get_package, query.name, latest)
    except RegistryUnavailableError as exc:
        local = await anyio.to_thread.run_sync(store.latest_package, query.name)
        if local is None:
            raise
        warning = f"Registry unavailable ({exc}); serving locally indexed {local.name}@{local.version}, which may be stale"
        logger.warning(warning)
        return Resolution(package=local, mode="name_only", stale=True, warning=warning)

    if package is None:
        raise IOFailureError(f"{query.name}@{latest} was ingested but is not visible in the index")
    return Resolution(package=package, mode="name_only", ingested=ingested)
