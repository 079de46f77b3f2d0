"""
crates.io registry 客户端（外部系统连接器）。

约定：
- 这里只做“HTTP 调用 + 错误分类 + schema 校验”，不做索引决策。
- 404 -> NotFoundError；网络错误 / 429 / 5xx / 响应结构异常 -> RegistryUnavailableError。
- 所有请求都带 User-Agent（crates.io 要求），并受网络并发 limiter 约束。
"""

from __future__ import annotations

import logging
from typing import Protocol

import anyio
import httpx

from crate_index.errors import NotFoundError
from crate_index.errors import RegistryUnavailableError
from crate_index.registry.schemas import CrateResponse
from crate_index.versions import is_valid_version

logger = logging.getLogger(__name__)


class PackageRegistry(Protocol):
    """上游 registry 接口协议（测试里可替换为内存假实现）。"""

    async def latest_version(self, name: str) -> str: ...

    async def fetch_archive(self, name: str, version: str) -> bytes: ...


class RegistryClient:
    def __init__(
        self,
        api_base_url: str,
        download_base_url: str,
        user_agent: str,
        http_client: httpx.AsyncClient,
        limiter: anyio.CapacityLimiter,
    ) -> None:
        """
        - api_base_url: 例如 https://crates.io（不包含末尾 /）
        - download_base_url: 例如 https://static.crates.io
        - http_client: 复用的 httpx.AsyncClient
        - limiter: 网络并发上限（与解析并发分开）
        """
        self._api_base_url = api_base_url.rstrip("/")
        self._download_base_url = download_base_url.rstrip("/")
        self._user_agent = user_agent
        self._http_client = http_client
        self._limiter = limiter

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": self._user_agent}

    async def latest_version(self, name: str) -> str:
        """
        查询 crate 的最新版本。

        优先 `max_stable_version`，没有稳定版时退回 `max_version`。
        """
        url = f"{self._api_base_url}/api/v1/crates/{name}"
        response = await self._get(url=url, what=f"crate {name}", missing_statuses=(404,))
        try:
            payload = CrateResponse.model_validate(response.json())
        except ValueError as exc:
            logger.error(f"Unexpected registry payload for {name}: {exc}")
            raise RegistryUnavailableError(f"Unexpected registry payload for {name}: {exc}") from exc
        version = payload.crate.max_stable_version or payload.crate.max_version
        if not is_valid_version(version):
            raise RegistryUnavailableError(f"Registry returned an invalid version for {name}: {version!r}")
        return version

    async def fetch_archive(self, name: str, version: str) -> bytes:
        """下载 `.crate` 归档（tar.gz 字节）。静态存储对不存在的对象可能返回 403。"""
        url = f"{self._download_base_url}/crates/{name}/{name}-{version}.crate"
        response = await self._get(url=url, what=f"archive {name}@{version}", missing_statuses=(403, 404))
        logger.info(f"Downloaded {name}@{version} ({len(response.content)} bytes)")
        return response.content

    async def _get(self, url: str, what: str, missing_statuses: tuple[int, ...]) -> httpx.Response:
        async with self._limiter:
            try:
                response = await self._http_client.get(url, headers=self._headers(), follow_redirects=True)
            except httpx.HTTPError as exc:
                logger.error(f"Registry request failed for {what}: {exc!r}")
                raise RegistryUnavailableError(f"Registry request failed for {what}: {exc!r}") from exc
        if response.status_code in missing_statuses:
            raise NotFoundError(f"{what} not found in registry")
        if response.status_code >= 400:
            logger.error(f"Registry API error {response.status_code} for {what}: {response.text[:200]}")
            raise RegistryUnavailableError(f"Registry API error {response.status_code} for {what}")
        return response
