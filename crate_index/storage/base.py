"""
Index Store 抽象。

当前提供：
- `IndexStore` Protocol：Postgres 与内存实现共享同一接口
- 两个实现共用的过滤 / 排序 / 切片逻辑（保证正则语义在不同实现间一致）

约定：
- 同一个 (name, version) 的写入必须整体可见或整体不可见
- 读操作从不等待其他 key 的写入
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Sequence
from typing import Protocol

from crate_index.errors import InvalidQueryError
from crate_index.storage.models import Definition
from crate_index.storage.models import DependencyEdge
from crate_index.storage.models import Kind
from crate_index.storage.models import PackageStats
from crate_index.storage.models import PackageVersion
from crate_index.storage.models import SourceFile
from crate_index.versions import is_valid_version
from crate_index.versions import version_key


class IndexStore(Protocol):
    """索引存储接口协议（依赖倒置，方便替换 Postgres/Memory）。"""

    def put(
        self,
        package: PackageVersion,
        definitions: Sequence[Definition],
        files: Sequence[SourceFile],
        edges: Sequence[DependencyEdge],
    ) -> None: ...

    def get_package(self, name: str, version: str) -> PackageVersion | None: ...

    def list_versions(self, name: str) -> list[PackageVersion]: ...

    def prune(self, name: str, version: str) -> bool: ...

    def get_by_id(self, definition_id: str) -> Definition | None: ...

    def scan(
        self,
        name: str,
        version: str | None,
        kind: Kind,
        name_pattern: str | None = None,
    ) -> list[Definition]: ...

    def get_source_file(self, name: str, version: str, path: str) -> SourceFile | None: ...

    def iter_source_files(self, name: str, version: str) -> Iterator[SourceFile]: ...

    def read_file(
        self,
        name: str,
        version: str,
        path: str,
        start_line: int | None = None,
        end_line: int | None = None,
    ) -> str | None: ...

    def dependency_edges(self, name: str, version: str) -> list[DependencyEdge]: ...

    def package_stats(self, name: str, version: str) -> PackageStats: ...

    def latest_package(self, name: str) -> PackageVersion | None: ...


def compile_pattern(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise InvalidQueryError(f"Invalid regex {pattern!r}: {exc}") from exc


def match_texts(definition: Definition) -> tuple[str, ...]:
    if definition.kind is Kind.IMPL and definition.trait_name:
        return definition.name, definition.trait_name
    return (definition.name,)


def filter_definitions(definitions: Iterable[Definition], name_pattern: str | None) -> list[Definition]:
    if name_pattern is None:
        return sort_definitions(definitions)
    regex = compile_pattern(name_pattern)
    matched = [d for d in definitions if any(regex.search(text) for text in match_texts(d))]
    return sort_definitions(matched)


def sort_definitions(definitions: Iterable[Definition]) -> list[Definition]:
    return sorted(definitions, key=lambda d: (d.path, d.start_line, d.start_byte, d.kind.value))


def select_latest(packages: Iterable[PackageVersion]) -> PackageVersion | None:
    candidates = [p for p in packages if is_valid_version(p.version)]
    if not candidates:
        return None
    return max(candidates, key=lambda p: (version_key(p.version), p.ingested_at))


def split_lines(content: str) -> list[str]:
    """只按 LF 切行，与 tree-sitter 的行号一致（`str.splitlines` 还会在换页符、U+2028 等处断行）。"""
    parts = content.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def slice_lines(content: str, start_line: int | None = None, end_line: int | None = None) -> str:
    """
    按 1-based 闭区间切行，保留原始换行符。

    show 与 read_file 都走这里，保证两边切出来的文本逐字节一致。
    """
    lines = split_lines(content)
    start = max(start_line or 1, 1)
    end = len(lines) if end_line is None else min(end_line, len(lines))
    if end < start:
        return ""
    return "".join(lines[start - 1 : end])


def line_count(content: str) -> int:
    return len(split_lines(content))
