from __future__ import annotations

import anyio
import httpx
import pytest

from crate_index.dev.mock_registry_server import build_mock_registry_app
from crate_index.errors import NotFoundError
from crate_index.errors import RegistryUnavailableError
from crate_index.indexing.extractor import extract_archive
from crate_index.registry.client import RegistryClient

CRATES = {
    "demo": {
        "1.0.0": {"Cargo.toml": '[package]\nname = "demo"\nversion = "1.0.0"\n', "src/lib.rs": "pub fn one() {}\n"},
        "1.1.0": {"Cargo.toml": '[package]\nname = "demo"\nversion = "1.1.0"\n', "src/lib.rs": "pub fn two() {}\n"},
        "2.0.0-beta.1": {"src/lib.rs": "pub fn beta() {}\n"},
    },
    "only-pre": {
        "0.1.0-alpha.1": {"src/lib.rs": "pub fn alpha() {}\n"},
    },
}


def _client(transport: httpx.AsyncBaseTransport, user_agent: str = "crate-index-tests/1.0") -> RegistryClient:
    return RegistryClient(
        api_base_url="http://registry.test/",
        download_base_url="http://static.registry.test",
        user_agent=user_agent,
        http_client=httpx.AsyncClient(transport=transport),
        limiter=anyio.CapacityLimiter(2),
    )


def _mock_registry() -> RegistryClient:
    return _client(httpx.ASGITransport(app=build_mock_registry_app(CRATES)))


@pytest.mark.anyio
async def test_latest_version_prefers_stable() -> None:
    client = _mock_registry()
    assert await client.latest_version("demo") == "1.1.0"
    assert await client.latest_version("only-pre") == "0.1.0-alpha.1"


@pytest.mark.anyio
async def test_unknown_crate_is_not_found() -> None:
    client = _mock_registry()
    with pytest.raises(NotFoundError):
        await client.latest_version("missing")


@pytest.mark.anyio
async def test_fetch_archive_round_trips_through_extractor(tmp_path) -> None:
    client = _mock_registry()
    archive = await client.fetch_archive("demo", "1.1.0")
    dest = tmp_path / "demo-1.1.0"
    assert extract_archive(archive, str(dest), "demo-1.1.0") is True
    assert (dest / "src" / "lib.rs").read_text(encoding="utf-8") == "pub fn two() {}\n"


@pytest.mark.anyio
async def test_missing_archive_is_not_found() -> None:
    client = _mock_registry()
    with pytest.raises(NotFoundError):
        await client.fetch_archive("demo", "9.9.9")


@pytest.mark.anyio
async def test_network_errors_mean_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(httpx.MockTransport(handler))
    with pytest.raises(RegistryUnavailableError):
        await client.latest_version("demo")
    with pytest.raises(RegistryUnavailableError):
        await client.fetch_archive("demo", "1.0.0")


@pytest.mark.anyio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_throttling_and_server_errors_mean_unavailable(status: int) -> None:
    client = _client(httpx.MockTransport(lambda request: httpx.Response(status, text="nope")))
    with pytest.raises(RegistryUnavailableError):
        await client.latest_version("demo")


@pytest.mark.anyio
async def test_unexpected_payload_means_unavailable() -> None:
    client = _client(httpx.MockTransport(lambda request: httpx.Response(200, json={"unexpected": True})))
    with pytest.raises(RegistryUnavailableError):
        await client.latest_version("demo")

    client = _client(httpx.MockTransport(lambda request: httpx.Response(200, text="<html>")))
    with pytest.raises(RegistryUnavailableError):
        await client.latest_version("demo")


@pytest.mark.anyio
async def test_requests_carry_user_agent_and_urls() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.startswith("/api/"):
            return httpx.Response(200, json={"crate": {"name": "demo", "max_version": "1.0.0"}})
        return httpx.Response(200, content=b"archive-bytes")

    client = _client(httpx.MockTransport(handler), user_agent="my-agent/2.0 (ops@example.com)")
    assert await client.latest_version("demo") == "1.0.0"
    assert await client.fetch_archive("demo", "1.0.0") == b"archive-bytes"

    assert [str(r.url) for r in seen] == [
        "http://registry.test/api/v1/crates/demo",
        "http://static.registry.test/crates/demo/demo-1.0.0.crate",
    ]
    assert all(r.headers["user-agent"] == "my-agent/2.0 (ops@example.com)" for r in seen)
