"""
FastAPI 服务入口。

这里做三件事：
- 加载配置（严格校验环境变量）
- 组装外部依赖（HTTP Client / Registry Client / Index Store）
- 装配路由（health + crate 查询）

注意：
- 业务流程不写在这里（由 `service/orchestrator.py` 负责）
- `httpx.AsyncClient` 会被复用（避免每个请求新建连接），连接数受网络并发上限约束
"""

from __future__ import annotations

import os
from collections.abc import Mapping

import anyio
import httpx
import uvicorn
from fastapi import FastAPI

from crate_index.api.routes import build_crate_router
from crate_index.api.routes import register_error_handlers
from crate_index.config import AppConfig
from crate_index.config import load_config_from_env
from crate_index.registry.client import RegistryClient
from crate_index.service.orchestrator import build_query_orchestrator
from crate_index.storage.base import IndexStore
from crate_index.storage.memory import InMemoryIndexStore
from crate_index.storage.pg import IndexStorageClient
from crate_index.storage.pg import PgIndexStore
from crate_index.storage.pg import ensure_schema


def build_store(config: AppConfig) -> IndexStore:
    if config.uses_memory_store:
        return InMemoryIndexStore()
    storage_client = IndexStorageClient(dsn=config.database_url)
    ensure_schema(storage_client)
    return PgIndexStore(client=storage_client)


def build_app(environ: Mapping[str, str] | None = None) -> FastAPI:
    """创建并返回 FastAPI app（便于测试/复用）。"""

    # 1) 配置：缺失会直接抛错，启动失败（这是期望行为）
    config = load_config_from_env(os.environ if environ is None else environ)

    # 2) 可复用的 HTTP client：只给 registry 用
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(config.http_timeout),
        limits=httpx.Limits(max_connections=config.max_network_concurrency),
    )
    registry = RegistryClient(
        api_base_url=str(config.registry_api_url),
        download_base_url=str(config.registry_download_url),
        user_agent=config.user_agent,
        http_client=http_client,
        limiter=anyio.CapacityLimiter(config.max_network_concurrency),
    )

    # 3) 存储 + 编排
    orchestrator = build_query_orchestrator(store=build_store(config), registry=registry, config=config)

    app = FastAPI(title="Crate Index", version="0.1.0")

    @app.get("/health")
    async def health() -> dict[str, str]:
        """健康检查：用于 k8s / LB 探活。"""
        return {"status": "ok"}

    app.include_router(build_crate_router(orchestrator=orchestrator))
    register_error_handlers(app)
    return app


def main() -> None:
    uvicorn.run("crate_index.main:build_app", factory=True, host="127.0.0.1", port=8000)


if __name__ == "__main__":
    main()
