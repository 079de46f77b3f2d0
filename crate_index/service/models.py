from __future__ import annotations

from pydantic import BaseModel, Field

from crate_index.indexing.models import IngestSummary
from crate_index.query.models import DefinitionSummary
from crate_index.query.models import SearchMatch
from crate_index.storage.models import Definition
from crate_index.storage.models import Kind


class QueryResponse(BaseModel):
    """所有对外响应共有的字段：实际命中的版本 + 是否为降级结果。"""

    package: str
    version: str
    stale: bool = False
    warning: str | None = None


class FetchResponse(QueryResponse):
    summary: IngestSummary


class LatestResponse(QueryResponse):
    indexed: bool
    indexed_versions: list[str] = Field(default_factory=list)


class DefinitionListResponse(QueryResponse):
    kind: Kind
    items: list[DefinitionSummary] = Field(default_factory=list)
    truncated: bool = False


class SearchResponse(QueryResponse):
    pattern: str
    matches: list[SearchMatch] = Field(default_factory=list)
    truncated: bool = False


class DefinitionResponse(QueryResponse):
    definition: Definition
    source: str


class FileResponse(QueryResponse):
    path: str
    start_line: int
    end_line: int
    total_lines: int
    text: str


class ReadmeResponse(QueryResponse):
    path: str
    text: str


class PruneResponse(QueryResponse):
    removed: bool
    source_removed: bool = False
