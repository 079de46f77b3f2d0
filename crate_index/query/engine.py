"""
Query Engine：只读查询（list / search / show / read_file / readme）。

约定：
- 不修改任何状态；所有过滤都交给 Index Store 的共享 helper（正则语义一致）
- 输出按 (path, line) 排序，结果数量有上限，超出时标记 truncated
- show 的源码片段与 read_file 走同一个切行函数，保证逐字节一致
"""

from __future__ import annotations

import logging
import os
import posixpath
import re

from crate_index.errors import InvalidIdError
from crate_index.errors import InvalidQueryError
from crate_index.errors import IOFailureError
from crate_index.errors import NotFoundError
from crate_index.indexing.file_scanner import list_tree_files
from crate_index.indexing.manifest import read_manifest
from crate_index.query.models import DefinitionDetail
from crate_index.query.models import DefinitionList
from crate_index.query.models import DefinitionSummary
from crate_index.query.models import FileSlice
from crate_index.query.models import Readme
from crate_index.query.models import SearchMatch
from crate_index.query.models import SearchResult
from crate_index.storage.base import IndexStore
from crate_index.storage.base import compile_pattern
from crate_index.storage.base import line_count
from crate_index.storage.base import slice_lines
from crate_index.storage.base import split_lines
from crate_index.storage.models import Kind
from crate_index.storage.models import PackageVersion
from crate_index.versions import newest_satisfying

logger = logging.getLogger(__name__)

README_CANDIDATES = (
    "README.md",
    "README.markdown",
    "README.txt",
    "README",
    "readme.md",
    "readme.markdown",
    "readme.txt",
    "readme",
)
MAX_LISTED_FILES = 20
MAX_RELATED_PACKAGES = 50
_ID_RE = re.compile(r"^[0-9a-f]{16}$")
_KIND_BY_VALUE = {k.value: k for k in Kind}
_KIND_ALIASES = {
    "fn": Kind.FUNCTION,
    "functions": Kind.FUNCTION,
    "structs": Kind.STRUCT,
    "enums": Kind.ENUM,
    "traits": Kind.TRAIT,
    "macros": Kind.MACRO,
    "type-alias": Kind.TYPE_ALIAS,
    "type_aliases": Kind.TYPE_ALIAS,
    "type-aliases": Kind.TYPE_ALIAS,
    "const": Kind.CONSTANT,
    "constants": Kind.CONSTANT,
    "impls": Kind.IMPL,
}


def parse_kind(text: str) -> Kind:
    value = text.strip().lower()
    kind = _KIND_BY_VALUE.get(value) or _KIND_ALIASES.get(value)
    if kind is None:
        raise InvalidQueryError(f"Unknown definition kind: {text!r} (expected one of {[k.value for k in Kind]})")
    return kind


class QueryEngine:
    def __init__(self, store: IndexStore, max_results: int, max_reexport_depth: int = 5) -> None:
        if max_results <= 0:
            raise ValueError("max_results must be > 0")
        self._store = store
        self._max_results = max_results
        self._max_reexport_depth = max_reexport_depth

    def list_definitions(
        self,
        package: PackageVersion,
        kind: Kind,
        pattern: str | None = None,
        include_reexports: bool = True,
    ) -> DefinitionList:
        items: list[DefinitionSummary] = []
        for member in self._packages(package=package, include_reexports=include_reexports):
            for definition in self._store.scan(member.name, member.version, kind, pattern):
                if len(items) >= self._max_results:
                    return DefinitionList(items=items, truncated=True)
                items.append(DefinitionSummary.from_definition(definition))
        return DefinitionList(items=items)

    def search(self, package: PackageVersion, pattern: str, include_reexports: bool = True) -> SearchResult:
        """逐行正则搜索源码（re.search 语义，大小写敏感）。"""
        regex = compile_pattern(pattern)
        matches: list[SearchMatch] = []
        for member in self._packages(package=package, include_reexports=include_reexports):
            for source in self._store.iter_source_files(member.name, member.version):
                for number, raw in enumerate(split_lines(source.content), start=1):
                    line = raw.rstrip("\n").removesuffix("\r")
                    if regex.search(line) is None:
                        continue
                    if len(matches) >= self._max_results:
                        return SearchResult(matches=matches, truncated=True)
                    matches.append(
                        SearchMatch(
                            package=member.name,
                            version=member.version,
                            path=source.path,
                            line=number,
                            text=line,
                        )
                    )
        return SearchResult(matches=matches)

    def show(self, definition_id: str) -> DefinitionDetail:
        if not _ID_RE.match(definition_id):
            raise InvalidIdError(f"Malformed definition id: {definition_id!r}")
        definition = self._store.get_by_id(definition_id)
        if definition is None:
            raise InvalidIdError(f"Unknown definition id: {definition_id}")
        source = self._store.read_file(
            definition.package,
            definition.version,
            definition.path,
            definition.start_line,
            definition.end_line,
        )
        if source is None:
            raise NotFoundError(f"Source file {definition.path} of {definition.package}@{definition.version} is missing")
        return DefinitionDetail(definition=definition, source=source)

    def read_file(
        self,
        package: PackageVersion,
        path: str,
        start_line: int | None = None,
        end_line: int | None = None,
    ) -> FileSlice:
        relative = normalize_relative_path(path)
        if start_line is not None and start_line < 1:
            raise InvalidQueryError(f"start_line must be >= 1, got {start_line}")
        if end_line is not None and start_line is not None and end_line < start_line:
            raise InvalidQueryError(f"end_line {end_line} is before start_line {start_line}")

        content = self._load_text(package=package, relative=relative)
        total = line_count(content)
        start = start_line or 1
        if total > 0 and start > total:
            raise InvalidQueryError(f"start_line {start} is beyond the end of {relative} ({total} lines)")
        end = total if end_line is None else min(end_line, total)
        return FileSlice(
            package=package.name,
            version=package.version,
            path=relative,
            start_line=start,
            end_line=end,
            total_lines=total,
            text=slice_lines(content, start, end_line),
        )

    def readme(self, package: PackageVersion) -> Readme:
        root = package.source_root
        if not os.path.isdir(root):
            raise NotFoundError(f"Source tree for {package.name}@{package.version} is not available")
        candidates: list[str] = []
        manifest = read_manifest(root)
        if manifest.readme is not None:
            candidates.append(manifest.readme)
        candidates.extend(c for c in README_CANDIDATES if c not in candidates)
        for candidate in candidates:
            try:
                relative = normalize_relative_path(candidate)
            except InvalidQueryError:
                logger.warning(f"Ignoring unsafe readme path {candidate!r} in {package.name}@{package.version}")
                continue
            full_path = _resolve_under(root=root, relative=relative)
            if full_path is None or not os.path.isfile(full_path):
                continue
            return Readme(
                package=package.name,
                version=package.version,
                path=relative,
                text=_read_text(full_path),
            )
        raise NotFoundError(f"No README found for {package.name}@{package.version}")

    def related_packages(self, package: PackageVersion) -> list[PackageVersion]:
        """沿着存储的 re-export 边找到已索引的依赖版本（有界 BFS）。"""
        result = [package]
        seen = {package.name}
        frontier: list[tuple[PackageVersion, int]] = [(package, 0)]
        while frontier:
            current, depth = frontier.pop(0)
            if depth >= self._max_reexport_depth:
                continue
            for edge in self._store.dependency_edges(current.name, current.version):
                if edge.target in seen:
                    continue
                target = self._indexed_target(name=edge.target, requirement=edge.requirement)
                if target is None:
                    continue
                seen.add(edge.target)
                result.append(target)
                if len(result) >= MAX_RELATED_PACKAGES:
                    return result
                frontier.append((target, depth + 1))
        return result

    def _packages(self, package: PackageVersion, include_reexports: bool) -> list[PackageVersion]:
        if not include_reexports:
            return [package]
        return self.related_packages(package=package)

    def _indexed_target(self, name: str, requirement: str) -> PackageVersion | None:
        versions = self._store.list_versions(name)
        match = newest_satisfying([p.version for p in versions], requirement)
        if match is not None:
            return next(p for p in versions if p.version == match)
        return self._store.latest_package(name)

    def _load_text(self, package: PackageVersion, relative: str) -> str:
        stored = self._store.get_source_file(package.name, package.version, relative)
        if stored is not None:
            return stored.content
        full_path = _resolve_under(root=package.source_root, relative=relative)
        if full_path is None:
            raise InvalidQueryError(f"Path escapes the crate source root: {relative}")
        if os.path.isfile(full_path):
            return _read_text(full_path)
        available = self._available_files(package=package)
        raise NotFoundError(
            f"File {relative} not found in {package.name}@{package.version}. "
            f"Available files: {', '.join(available) if available else '(none)'}"
        )

    def _available_files(self, package: PackageVersion) -> list[str]:
        if os.path.isdir(package.source_root):
            return list_tree_files(package.source_root, MAX_LISTED_FILES)
        paths: list[str] = []
        for source in self._store.iter_source_files(package.name, package.version):
            paths.append(source.path)
            if len(paths) >= MAX_LISTED_FILES:
                break
        return paths


def normalize_relative_path(path: str) -> str:
    if not path or path.startswith(("/", "\\")) or "\\" in path or re.match(r"^[A-Za-z]:", path):
        raise InvalidQueryError(f"Path must be relative to the crate root: {path!r}")
    normalized = posixpath.normpath(path)
    if normalized in (".", "..") or normalized.startswith("../"):
        raise InvalidQueryError(f"Path must stay inside the crate root: {path!r}")
    return normalized


def _resolve_under(root: str, relative: str) -> str | None:
    real_root = os.path.realpath(root)
    full_path = os.path.realpath(os.path.join(real_root, *relative.split("/")))
    if not full_path.startswith(real_root + os.sep):
        return None
    return full_path


def _read_text(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8", errors="replace", newline="") as handle:
            return handle.read()
    except OSError as exc:
        logger.error(f"Cannot read {path}: {exc}")
        raise IOFailureError(f"Cannot read {path}: {exc}") from exc
