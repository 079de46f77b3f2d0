from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Kind(str, Enum):
    FUNCTION = "function"
    STRUCT = "struct"
    ENUM = "enum"
    TRAIT = "trait"
    MACRO = "macro"
    TYPE_ALIAS = "type_alias"
    CONSTANT = "constant"
    IMPL = "impl"


class PackageVersion(BaseModel):
    name: str
    version: str
    ingested_at: datetime
    source_root: str


class Member(BaseModel):
    name: str
    detail: str | None = None
    docs: str | None = None


class Definition(BaseModel):
    id: str
    package: str
    version: str
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
    parent_id: str | None = None
    trait_name: str | None = None
    qualifier: str | None = None
    members: list[Member] = Field(default_factory=list)


class SourceFile(BaseModel):
    package: str
    version: str
    path: str
    content: str


class DependencyEdge(BaseModel):
    package: str
    version: str
    target: str
    requirement: str = "*"


class PackageStats(BaseModel):
    file_count: int
    kind_counts: dict[Kind, int] = Field(default_factory=dict)

    @property
    def definition_count(self) -> int:
        return sum(self.kind_counts.values())
