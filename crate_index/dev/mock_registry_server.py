"""
本地 Mock crates.io server（只覆盖 ingestion 用到的两个接口）。

用途：
- 在不访问真实 crates.io 的情况下，本地跑通：
  latest version -> download .crate -> extract -> parse -> index
- 单元测试里通过 `httpx.ASGITransport` 直接挂载

启动：
  python -m crate_index.dev.mock_registry_server
  CRATE_INDEX_REGISTRY_API_URL=http://127.0.0.1:9003 \
  CRATE_INDEX_REGISTRY_DOWNLOAD_URL=http://127.0.0.1:9003 ...
"""

from __future__ import annotations

import io
import tarfile
from collections.abc import Mapping

import uvicorn
from fastapi import FastAPI
from fastapi import Response
from fastapi.responses import JSONResponse

from crate_index.versions import is_valid_version
from crate_index.versions import newest
from crate_index.versions import version_key

CrateFiles = Mapping[str, str | bytes]


def build_crate_archive(name: str, version: str, files: CrateFiles) -> bytes:
    """按 crates.io 的格式打包：tar.gz，所有条目都在 `{name}-{version}/` 前缀下。"""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for path, content in sorted(files.items()):
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name=f"{name}-{version}/{path}")
            info.size = len(data)
            info.mode = 0o644
            info.mtime = 0
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _sample_crates() -> dict[str, dict[str, CrateFiles]]:
    return {
        "demo-core": {
            "0.1.0": {
                "Cargo.toml": '[package]\nname = "demo-core"\nversion = "0.1.0"\n',
                "README.md": "# demo-core\n",
                "src/lib.rs": (
                    "/// Errors raised by demo-core.\n"
                    "pub enum CoreError {\n"
                    "    Io,\n"
                    "    Parse(String),\n"
                    "}\n"
                    "\n"
                    "pub fn version() -> &'static str {\n"
                    '    "0.1.0"\n'
                    "}\n"
                ),
            },
        },
        "demo": {
            "1.0.0": {
                "Cargo.toml": (
                    '[package]\nname = "demo"\nversion = "1.0.0"\n\n'
                    '[dependencies]\ndemo-core = "0.1"\n'
                ),
                "README.md": "# demo\n",
                "src/lib.rs": (
                    "pub use demo_core::CoreError;\n"
                    "\n"
                    "/// A greeting.\n"
                    "pub struct Greeting {\n"
                    "    pub text: String,\n"
                    "}\n"
                    "\n"
                    "impl Greeting {\n"
                    "    pub fn new(text: &str) -> Self {\n"
                    "        Greeting { text: text.to_string() }\n"
                    "    }\n"
                    "}\n"
                ),
            },
        },
    }


def build_mock_registry_app(crates: Mapping[str, Mapping[str, CrateFiles]]) -> FastAPI:
    """crates: name -> version -> {相对路径: 文件内容}。"""
    app = FastAPI(title="Mock crates.io", version="0.1.0")
    requests: list[str] = []

    @app.get("/api/v1/crates/{name}")
    async def get_crate(name: str) -> Response:
        requests.append(f"metadata:{name}")
        versions = crates.get(name)
        if not versions:
            return JSONResponse(status_code=404, content={"errors": [{"detail": "Not Found"}]})
        stable = newest([v for v in versions if is_valid_version(v) and version_key(v)[3] == ((2, 0),)])
        return JSONResponse(
            content={
                "crate": {
                    "name": name,
                    "max_version": newest(list(versions)),
                    "max_stable_version": stable,
                    "newest_version": newest(list(versions)),
                }
            }
        )

    @app.get("/crates/{name}/{filename}")
    async def download(name: str, filename: str) -> Response:
        requests.append(f"download:{filename}")
        for version, files in crates.get(name, {}).items():
            if filename == f"{name}-{version}.crate":
                return Response(content=build_crate_archive(name, version, files), media_type="application/gzip")
        # static.crates.io（S3）对不存在的对象返回 403
        return Response(status_code=403, content=b"Forbidden")

    @app.get("/__debug__/requests")
    async def debug_requests() -> dict[str, object]:
        return {"count": len(requests), "requests": requests}

    return app


app = build_mock_registry_app(_sample_crates())


def main() -> None:
    uvicorn.run(app, host="127.0.0.1", port=9003)


if __name__ == "__main__":
    main()
