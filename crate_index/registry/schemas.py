"""
crates.io API response schemas（Pydantic）。

只覆盖当前用到的字段子集；其余字段由 Pydantic 默认忽略。
"""

from __future__ import annotations

from pydantic import BaseModel


class CrateInfo(BaseModel):
    """`GET /api/v1/crates/{name}` 里的 crate 子结构。"""

    name: str
    max_version: str
    max_stable_version: str | None = None
    newest_version: str | None = None


class CrateResponse(BaseModel):
    crate: CrateInfo
