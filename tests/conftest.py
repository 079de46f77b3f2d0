from __future__ import annotations

from collections.abc import Mapping

import pytest

from crate_index.config import AppConfig
from crate_index.dev.mock_registry_server import build_crate_archive
from crate_index.errors import NotFoundError
from crate_index.errors import RegistryUnavailableError
from crate_index.service.orchestrator import QueryOrchestrator
from crate_index.service.orchestrator import build_query_orchestrator
from crate_index.storage.memory import InMemoryIndexStore
from crate_index.versions import newest

SAMPLE_LIB = "\n".join(
    [
        "//! Sample crate used by the tests.",
        "",
        "pub use helper_crate::Helper;",
        "",
        "/// Maximum number of retries.",
        "pub const MAX_RETRIES: u32 = 3;",
        "",
        "static mut COUNTER: u64 = 0;",
        "",
        "/// Result alias.",
        "pub type Result<T> = std::result::Result<T, ParseError>;",
        "",
        "/// Errors produced while parsing.",
        "#[derive(Debug)]",
        "pub struct ParseError {",
        "    /// Line where parsing failed.",
        "    pub line: usize,",
        "    message: String,",
        "}",
        "",
        "pub struct IoError(pub String);",
        "",
        "pub struct Config {",
        "    pub verbose: bool,",
        "}",
        "",
        "/// Output formats.",
        "pub enum Format {",
        "    Json,",
        "    Text { width: usize },",
        "    Raw(u8),",
        "}",
        "",
        "pub trait Render {",
        "    /// Render to a string.",
        "    fn render(&self) -> String;",
        "}",
        "",
        "impl Render for Config {",
        "    fn render(&self) -> String {",
        '        format!("verbose={}", self.verbose)',
        "    }",
        "}",
        "",
        "impl Config {",
        "    /// Create a config.",
        "    pub fn new() -> Self {",
        "        Config { verbose: false }",
        "    }",
        "}",
        "",
        "#[macro_export]",
        "macro_rules! shout {",
        '    ($e:expr) => { println!("{}!", $e) };',
        "}",
        "",
        "pub(crate) async fn load(path: &str) -> Result<Config> {",
        "    let _ = path;",
        "    Ok(Config::new())",
        "}",
        "",
    ]
)

SAMPLE_ERRORS = "\n".join(
    [
        "pub struct NetworkError;",
        "",
        "pub struct ErrorKind;",
        "",
        "mod inner {",
        "    pub fn nested_helper() {}",
        "}",
        "",
    ]
)

HELPER_LIB = "\n".join(
    [
        "/// Helper exported to dependents.",
        "pub struct Helper;",
        "",
        "pub fn help() -> Helper {",
        "    Helper",
        "}",
        "",
    ]
)

BROKEN_RS = "fn broken( {\n    let x = ;\n"


def line_of(source: str, needle: str) -> int:
    for number, line in enumerate(source.splitlines(), start=1):
        if needle in line:
            return number
    raise AssertionError(f"{needle!r} not found")


def sample_crate_files(version: str = "1.0.0", extra: Mapping[str, str | bytes] | None = None) -> dict[str, str | bytes]:
    files: dict[str, str | bytes] = {
        "Cargo.toml": (
            "[package]\n"
            'name = "sample"\n'
            f'version = "{version}"\n'
            "\n"
            "[dependencies]\n"
            'helper-crate = "0.2"\n'
        ),
        "README.md": "# sample\n\nA sample crate.\n",
        "src/lib.rs": SAMPLE_LIB,
        "src/errors.rs": SAMPLE_ERRORS,
    }
    if extra:
        files.update(extra)
    return files


def helper_crate_files() -> dict[str, str | bytes]:
    return {
        "Cargo.toml": '[package]\nname = "helper-crate"\nversion = "0.2.1"\n',
        "src/lib.rs": HELPER_LIB,
    }


class FakeRegistry:
    """内存版 registry：记录调用次数，可切换成“不可达”。"""

    def __init__(self, crates: dict[str, dict[str, dict[str, str | bytes]]]) -> None:
        self.crates = crates
        self.available = True
        self.metadata_calls: list[str] = []
        self.download_calls: list[str] = []
        self.broken_archives: set[str] = set()

    async def latest_version(self, name: str) -> str:
        self.metadata_calls.append(name)
        if not self.available:
            raise RegistryUnavailableError("registry is down")
        versions = self.crates.get(name)
        if not versions:
            raise NotFoundError(f"crate {name} not found in registry")
        latest = newest(list(versions))
        assert latest is not None
        return latest

    async def fetch_archive(self, name: str, version: str) -> bytes:
        self.download_calls.append(f"{name}@{version}")
        if not self.available:
            raise RegistryUnavailableError("registry is down")
        if f"{name}@{version}" in self.broken_archives:
            return b"this is not a gzip archive"
        files = self.crates.get(name, {}).get(version)
        if files is None:
            raise NotFoundError(f"archive {name}@{version} not found in registry")
        return build_crate_archive(name, version, files)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry(
        {
            "sample": {"1.0.0": sample_crate_files()},
            "helper-crate": {"0.2.1": helper_crate_files()},
        }
    )


@pytest.fixture
def store() -> InMemoryIndexStore:
    return InMemoryIndexStore()


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(database_url="memory://", data_dir=str(tmp_path / "data"), max_parse_concurrency=2)


@pytest.fixture
def orchestrator(store: InMemoryIndexStore, registry: FakeRegistry, config: AppConfig) -> QueryOrchestrator:
    return build_query_orchestrator(store=store, registry=registry, config=config)
