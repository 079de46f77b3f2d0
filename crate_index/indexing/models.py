from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, Field

from crate_index.storage.models import Kind

ParentAnchor = tuple[Kind, int, int]


@dataclass(frozen=True)
class MemberDraft:
    name: str
    detail: str | None = None
    docs: str | None = None


@dataclass(frozen=True)
class DefinitionDraft:
    """解析器产出的定义草稿：还没有 id，parent 用 (kind, start_byte, end_byte) 锚定。"""

    kind: Kind
    name: str
    path: str
    start_line: int
    end_line: int
    start_byte: int
    end_byte: int
    signature: str
    docs: str | None = None
    visibility: str = "private"
    parent: ParentAnchor | None = None
    trait_name: str | None = None
    qualifier: str | None = None
    members: tuple[MemberDraft, ...] = field(default_factory=tuple)


class Diagnostic(BaseModel):
    path: str
    message: str


class DependencyOutcome(BaseModel):
    package: str
    requirement: str = "*"
    status: Literal["ingested", "reused", "skipped", "failed"]
    version: str | None = None
    depth: int = 1
    error: str | None = None


class IngestSummary(BaseModel):
    package: str
    version: str
    source_root: str
    file_count: int = 0
    definition_count: int = 0
    kind_counts: dict[Kind, int] = Field(default_factory=dict)
    diagnostics: list[Diagnostic] = Field(default_factory=list)
    reexports: list[str] = Field(default_factory=list)
    dependencies: list[DependencyOutcome] = Field(default_factory=list)
    reused: bool = False
