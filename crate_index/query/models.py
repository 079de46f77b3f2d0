from __future__ import annotations

from pydantic import BaseModel, Field

from crate_index.storage.models import Definition
from crate_index.storage.models import Kind


class DefinitionSummary(BaseModel):
    id: str
    package: str
    version: str
    kind: Kind
    name: str
    path: str
    start_line: int
    end_line: int
    signature: str
    visibility: str
    parent_id: str | None = None
    trait_name: str | None = None

    @classmethod
    def from_definition(cls, definition: Definition) -> DefinitionSummary:
        return cls(
            id=definition.id,
            package=definition.package,
            version=definition.version,
            kind=definition.kind,
            name=definition.name,
            path=definition.path,
            start_line=definition.start_line,
            end_line=definition.end_line,
            signature=definition.signature,
            visibility=definition.visibility,
            parent_id=definition.parent_id,
            trait_name=definition.trait_name,
        )


class DefinitionList(BaseModel):
    items: list[DefinitionSummary] = Field(default_factory=list)
    truncated: bool = False


class SearchMatch(BaseModel):
    package: str
    version: str
    path: str
    line: int
    text: str


class SearchResult(BaseModel):
    matches: list[SearchMatch] = Field(default_factory=list)
    truncated: bool = False


class DefinitionDetail(BaseModel):
    definition: Definition
    source: str


class FileSlice(BaseModel):
    package: str
    version: str
    path: str
    start_line: int
    end_line: int
    total_lines: int
    text: str


class Readme(BaseModel):
    package: str
    version: str
    path: str
    text: str
