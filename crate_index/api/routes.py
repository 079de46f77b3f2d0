"""
HTTP 接入层（薄适配器）。

职责：
- 把 HTTP 参数转换成 orchestrator 调用
- 把业务错误的 `kind` 映射成 HTTP 状态码

业务流程不写在这里（由 `service/orchestrator.py` 负责）。
"""

from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi import FastAPI
from fastapi import Query
from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from crate_index.errors import CrateIndexError
from crate_index.query.engine import parse_kind
from crate_index.service.models import DefinitionListResponse
from crate_index.service.models import DefinitionResponse
from crate_index.service.models import FetchResponse
from crate_index.service.models import FileResponse
from crate_index.service.models import LatestResponse
from crate_index.service.models import PruneResponse
from crate_index.service.models import ReadmeResponse
from crate_index.service.models import SearchResponse
from crate_index.service.orchestrator import QueryOrchestrator
from crate_index.service.orchestrator import fetch_crate
from crate_index.service.orchestrator import latest_version
from crate_index.service.orchestrator import list_definitions
from crate_index.service.orchestrator import prune_crate
from crate_index.service.orchestrator import read_file
from crate_index.service.orchestrator import read_readme
from crate_index.service.orchestrator import search_crate
from crate_index.service.orchestrator import show_definition

logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[str, int] = {
    "not_found": 404,
    "not_indexed": 404,
    "invalid_id": 404,
    "invalid_query": 400,
    "registry_unavailable": 503,
    "extraction_failed": 502,
    "io_failure": 500,
}


class FetchRequest(BaseModel):
    name: str
    version: str | None = None
    force: bool = False


def build_crate_router(orchestrator: QueryOrchestrator) -> APIRouter:
    """创建 crate 查询路由。"""
    router = APIRouter()

    @router.post("/crates/fetch")
    async def fetch(req: FetchRequest) -> FetchResponse:
        return await fetch_crate(orchestrator=orchestrator, name=req.name, version=req.version, force=req.force)

    @router.get("/crates/{name}/latest")
    async def latest(name: str) -> LatestResponse:
        return await latest_version(orchestrator=orchestrator, name=name)

    @router.get("/crates/{query}/search")
    async def search(
        query: str,
        pattern: str = Query(min_length=1),
        include_reexports: bool = True,
    ) -> SearchResponse:
        return await search_crate(
            orchestrator=orchestrator,
            query=query,
            pattern=pattern,
            include_reexports=include_reexports,
        )

    @router.get("/crates/{query}/definitions/{kind}")
    async def definitions(
        query: str,
        kind: str,
        pattern: str | None = None,
        include_reexports: bool = True,
    ) -> DefinitionListResponse:
        return await list_definitions(
            orchestrator=orchestrator,
            query=query,
            kind=parse_kind(kind),
            pattern=pattern,
            include_reexports=include_reexports,
        )

    @router.get("/definitions/{definition_id}")
    async def show(definition_id: str) -> DefinitionResponse:
        return await show_definition(orchestrator=orchestrator, definition_id=definition_id)

    @router.get("/crates/{query}/files/{path:path}")
    async def file(
        query: str,
        path: str,
        start_line: int | None = None,
        end_line: int | None = None,
    ) -> FileResponse:
        return await read_file(
            orchestrator=orchestrator,
            query=query,
            path=path,
            start_line=start_line,
            end_line=end_line,
        )

    @router.get("/crates/{query}/readme")
    async def readme(query: str) -> ReadmeResponse:
        return await read_readme(orchestrator=orchestrator, query=query)

    @router.delete("/crates/{name}/{version}")
    async def prune(name: str, version: str, remove_source: bool = False) -> PruneResponse:
        return await prune_crate(orchestrator=orchestrator, name=name, version=version, remove_source=remove_source)

    return router


def register_error_handlers(app: FastAPI) -> None:
    """业务错误 -> `{"error": kind, "detail": message}` + 对应状态码。"""

    @app.exception_handler(CrateIndexError)
    async def handle_crate_index_error(request: Request, exc: CrateIndexError) -> JSONResponse:
        status_code = STATUS_BY_KIND.get(exc.kind, 500)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc}")
        return JSONResponse(status_code=status_code, content={"error": exc.kind, "detail": str(exc)})
