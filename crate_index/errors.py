"""
错误分类（所有对外可见的失败都必须能区分类型）。

约定：
- 每个错误类型带一个稳定的 `kind` 字符串，前端（HTTP 等）据此映射状态码
- 单文件解析失败 / 单个依赖失败会被吸收进 IngestSummary，不会向上抛
- 流水线级失败（registry、解压、磁盘）只中止当前这一次 ingestion
"""

from __future__ import annotations


class CrateIndexError(RuntimeError):
    """所有业务错误的基类。"""

    kind = "error"


class NotFoundError(CrateIndexError):
    """crate / 版本 / 文件在上游或本地都不存在。"""

    kind = "not_found"


class RegistryUnavailableError(CrateIndexError):
    """registry 暂时不可达（网络错误、429、5xx、响应结构异常）。"""

    kind = "registry_unavailable"


class ExtractionFailedError(CrateIndexError):
    """归档损坏或包含非法路径。"""

    kind = "extraction_failed"


class IOFailureError(CrateIndexError):
    """磁盘或存储写入失败。"""

    kind = "io_failure"


class ParseFailureError(CrateIndexError):
    """单个源文件无法解析；只在 indexer 内部使用，最终变成 diagnostic。"""

    kind = "parse_failure"


class NotIndexedError(CrateIndexError):
    """Pinned 查询指向一个本地没有的版本（不会自动拉取）。"""

    kind = "not_indexed"


class InvalidIdError(CrateIndexError):
    """show 查询的 id 不存在。"""

    kind = "invalid_id"


class InvalidQueryError(CrateIndexError, ValueError):
    """调用方输入非法：crate 名、版本号、正则、文件路径。"""

    kind = "invalid_query"
