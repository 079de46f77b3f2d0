"""
应用配置加载。

设计目标：
- **严格**：缺少必要环境变量就直接报错（避免“看起来跑了其实没配置好”）
- **类型安全**：使用 Pydantic 校验 URL / 数值范围，减少运行时踩坑
- **可测试**：核心加载函数接收 `environ` 显式输入，便于单元测试
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field, HttpUrl

MEMORY_DATABASE_URL = "memory://"


def default_data_dir() -> str:
    return os.path.join(os.path.expanduser("~"), ".crate-indexer")


class AppConfig(BaseModel):
    """运行所需配置；除数据库地址外都有默认值。"""

    database_url: str = Field(min_length=1)
    data_dir: str = Field(default_factory=default_data_dir)
    registry_api_url: HttpUrl = Field(default="https://crates.io", validate_default=True)
    registry_download_url: HttpUrl = Field(default="https://static.crates.io", validate_default=True)
    user_agent: str = Field(default="crate-index/0.1.0", min_length=1)
    http_timeout: float = Field(default=30.0, gt=0)
    max_network_concurrency: int = Field(default=8, ge=1)
    max_parse_concurrency: int = Field(default=4, ge=1)
    max_dependency_depth: int = Field(default=5, ge=0)
    max_results: int = Field(default=200, ge=1)
    max_file_bytes: int = Field(default=1_000_000, ge=1)

    @property
    def uses_memory_store(self) -> bool:
        return self.database_url == MEMORY_DATABASE_URL


_OPTIONAL_KEYS: dict[str, str] = {
    "CRATE_INDEX_DATA_DIR": "data_dir",
    "CRATE_INDEX_REGISTRY_API_URL": "registry_api_url",
    "CRATE_INDEX_REGISTRY_DOWNLOAD_URL": "registry_download_url",
    "CRATE_INDEX_USER_AGENT": "user_agent",
    "CRATE_INDEX_HTTP_TIMEOUT": "http_timeout",
    "CRATE_INDEX_MAX_NETWORK_CONCURRENCY": "max_network_concurrency",
    "CRATE_INDEX_MAX_PARSE_CONCURRENCY": "max_parse_concurrency",
    "CRATE_INDEX_MAX_DEPENDENCY_DEPTH": "max_dependency_depth",
    "CRATE_INDEX_MAX_RESULTS": "max_results",
    "CRATE_INDEX_MAX_FILE_BYTES": "max_file_bytes",
}


def load_config_from_env(environ: Mapping[str, str]) -> AppConfig:
    """
    从环境变量加载并校验配置。

    - **输入**：`environ`（例如 `os.environ`）
    - **输出**：`AppConfig`
    - **失败**：缺少 `CRATE_INDEX_DATABASE_URL` 抛 `ValueError`；
      取值非法时抛 Pydantic `ValidationError`（同样是 `ValueError` 子类）
    """
    database_url = environ.get("CRATE_INDEX_DATABASE_URL", "")
    if not database_url:
        raise ValueError("Missing required env vars: CRATE_INDEX_DATABASE_URL")

    values: dict[str, object] = {"database_url": database_url}
    for env_key, field_name in _OPTIONAL_KEYS.items():
        raw = environ.get(env_key)
        if raw is None or not raw.strip():
            continue
        values[field_name] = raw.strip()
    if "data_dir" in values:
        values["data_dir"] = os.path.expanduser(str(values["data_dir"]))

    # 交给 Pydantic 做类型校验（URL 合法性、数值范围）
    return AppConfig.model_validate(values)
