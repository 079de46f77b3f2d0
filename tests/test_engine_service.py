from __future__ import annotations

import os

import pytest

from crate_index.config import AppConfig
from crate_index.errors import InvalidIdError
from crate_index.errors import InvalidQueryError
from crate_index.errors import NotFoundError
from crate_index.errors import NotIndexedError
from crate_index.errors import RegistryUnavailableError
from crate_index.query.engine import parse_kind
from crate_index.service.orchestrator import build_query_orchestrator
from crate_index.service.orchestrator import fetch_crate
from crate_index.service.orchestrator import latest_version
from crate_index.service.orchestrator import list_definitions
from crate_index.service.orchestrator import prune_crate
from crate_index.service.orchestrator import read_file
from crate_index.service.orchestrator import read_readme
from crate_index.service.orchestrator import search_crate
from crate_index.service.orchestrator import show_definition
from crate_index.storage.memory import InMemoryIndexStore
from crate_index.storage.models import Kind
from tests.conftest import SAMPLE_LIB
from tests.conftest import FakeRegistry
from tests.conftest import line_of
from tests.conftest import sample_crate_files


@pytest.mark.parametrize(
    ("text", "kind"),
    [("struct", Kind.STRUCT), ("Structs", Kind.STRUCT), ("fn", Kind.FUNCTION), ("const", Kind.CONSTANT), ("impl", Kind.IMPL)],
)
def test_parse_kind_accepts_values_and_aliases(text: str, kind: Kind) -> None:
    assert parse_kind(text) is kind


def test_parse_kind_rejects_unknown() -> None:
    with pytest.raises(InvalidQueryError):
        parse_kind("module")


@pytest.mark.anyio
async def test_struct_scan_finds_error_types(orchestrator, registry) -> None:
    response = await list_definitions(orchestrator, "sample", Kind.STRUCT, "Error$")

    assert response.package == "sample"
    assert response.version == "1.0.0"
    assert response.stale is False
    assert [(d.name, d.path) for d in response.items] == [
        ("NetworkError", "src/errors.rs"),
        ("ParseError", "src/lib.rs"),
        ("IoError", "src/lib.rs"),
    ]
    assert response.truncated is False
    assert registry.download_calls == ["sample@1.0.0", "helper-crate@0.2.1"]


@pytest.mark.anyio
async def test_impl_matches_trait_name(orchestrator) -> None:
    response = await list_definitions(orchestrator, "sample", Kind.IMPL, "^Render$")
    assert [(d.name, d.trait_name) for d in response.items] == [("Config", "Render")]


@pytest.mark.anyio
async def test_invalid_regex_is_rejected(orchestrator) -> None:
    with pytest.raises(InvalidQueryError):
        await list_definitions(orchestrator, "sample", Kind.STRUCT, "(")
    with pytest.raises(InvalidQueryError):
        await search_crate(orchestrator, "sample", "[unclosed")


@pytest.mark.anyio
async def test_show_matches_read_file(orchestrator) -> None:
    listed = await list_definitions(orchestrator, "sample", Kind.STRUCT, "^ParseError$")
    summary = listed.items[0]

    detail = await show_definition(orchestrator, summary.id)
    assert detail.definition.docs == "Errors produced while parsing."
    assert "pub struct ParseError {" in detail.source
    assert detail.source.rstrip().endswith("}")

    file_slice = await read_file(
        orchestrator,
        "sample@1.0.0",
        summary.path,
        summary.start_line,
        summary.end_line,
    )
    assert file_slice.text == detail.source
    assert file_slice.start_line == summary.start_line


@pytest.mark.anyio
async def test_show_rejects_bad_ids(orchestrator) -> None:
    with pytest.raises(InvalidIdError):
        await show_definition(orchestrator, "not-an-id")
    with pytest.raises(InvalidIdError):
        await show_definition(orchestrator, "0" * 16)


@pytest.mark.anyio
async def test_search_reports_lines(orchestrator) -> None:
    response = await search_crate(orchestrator, "sample", r"pub fn new")
    assert [(m.path, m.line) for m in response.matches] == [("src/lib.rs", line_of(SAMPLE_LIB, "pub fn new"))]
    assert response.matches[0].text == "    pub fn new() -> Self {"


@pytest.mark.anyio
async def test_reexported_crates_can_be_excluded(orchestrator) -> None:
    with_deps = await search_crate(orchestrator, "sample", "Helper")
    assert {m.package for m in with_deps.matches} == {"sample", "helper-crate"}
    assert len(with_deps.matches) == 5

    own_only = await search_crate(orchestrator, "sample", "Helper", include_reexports=False)
    assert [(m.package, m.path) for m in own_only.matches] == [("sample", "src/lib.rs")]

    structs = await list_definitions(orchestrator, "sample", Kind.STRUCT, "^Helper$")
    assert [(d.package, d.version) for d in structs.items] == [("helper-crate", "0.2.1")]
    structs = await list_definitions(orchestrator, "sample", Kind.STRUCT, "^Helper$", include_reexports=False)
    assert structs.items == []


@pytest.mark.anyio
async def test_read_file_validates_paths_and_lines(orchestrator) -> None:
    await fetch_crate(orchestrator, "sample", "1.0.0")

    for bad in ["../etc/passwd", "/etc/passwd", "src/../../secret"]:
        with pytest.raises(InvalidQueryError):
            await read_file(orchestrator, "sample@1.0.0", bad)

    with pytest.raises(NotFoundError) as exc_info:
        await read_file(orchestrator, "sample@1.0.0", "src/missing.rs")
    assert "src/lib.rs" in str(exc_info.value)

    with pytest.raises(InvalidQueryError):
        await read_file(orchestrator, "sample@1.0.0", "src/lib.rs", 10_000)
    with pytest.raises(InvalidQueryError):
        await read_file(orchestrator, "sample@1.0.0", "src/lib.rs", 5, 2)


@pytest.mark.anyio
async def test_read_file_falls_back_to_extracted_tree(orchestrator) -> None:
    await fetch_crate(orchestrator, "sample@1.0.0")
    manifest = await read_file(orchestrator, "sample@1.0.0", "Cargo.toml")
    assert 'name = "sample"' in manifest.text
    assert manifest.start_line == 1
    assert manifest.end_line == manifest.total_lines

    whole = await read_file(orchestrator, "sample@1.0.0", "src/errors.rs", 1, 1)
    assert whole.text == "pub struct NetworkError;\n"


@pytest.mark.anyio
async def test_readme_uses_default_candidates(orchestrator) -> None:
    readme = await read_readme(orchestrator, "sample")
    assert readme.path == "README.md"
    assert readme.text.startswith("# sample")


@pytest.mark.anyio
async def test_readme_prefers_manifest_field(store, config) -> None:
    registry = FakeRegistry(
        {
            "documented": {
                "0.1.0": {
                    "Cargo.toml": '[package]\nname = "documented"\nversion = "0.1.0"\nreadme = "docs/GUIDE.md"\n',
                    "README.md": "# short\n",
                    "docs/GUIDE.md": "# The guide\n",
                    "src/lib.rs": "pub fn documented() {}\n",
                }
            }
        }
    )
    orchestrator = build_query_orchestrator(store=store, registry=registry, config=config)
    readme = await read_readme(orchestrator, "documented")
    assert readme.path == "docs/GUIDE.md"
    assert readme.text == "# The guide\n"


@pytest.mark.anyio
async def test_name_only_follows_new_releases(orchestrator, registry) -> None:
    first = await list_definitions(orchestrator, "sample", Kind.CONSTANT)
    assert first.version == "1.0.0"

    registry.crates["sample"]["1.2.0"] = sample_crate_files(version="1.2.0")
    second = await list_definitions(orchestrator, "sample", Kind.CONSTANT)
    assert second.version == "1.2.0"
    assert "sample@1.2.0" in registry.download_calls

    pinned = await list_definitions(orchestrator, "sample@1.0.0", Kind.CONSTANT)
    assert pinned.version == "1.0.0"
    assert [d.name for d in pinned.items] == ["MAX_RETRIES", "COUNTER"]


@pytest.mark.anyio
async def test_registry_outage_serves_stale_local_version(orchestrator, registry) -> None:
    await fetch_crate(orchestrator, "sample")
    registry.available = False

    response = await list_definitions(orchestrator, "sample", Kind.ENUM)
    assert response.version == "1.0.0"
    assert response.stale is True
    assert response.warning is not None and "1.0.0" in response.warning
    assert [d.name for d in response.items] == ["Format"]

    latest = await latest_version(orchestrator, "sample")
    assert latest.stale is True
    assert latest.version == "1.0.0"


@pytest.mark.anyio
async def test_registry_outage_without_local_copy_fails(store, config) -> None:
    registry = FakeRegistry({})
    registry.available = False
    orchestrator = build_query_orchestrator(store=store, registry=registry, config=config)
    with pytest.raises(RegistryUnavailableError):
        await list_definitions(orchestrator, "sample", Kind.STRUCT)


@pytest.mark.anyio
async def test_pinned_query_never_contacts_registry(orchestrator, registry) -> None:
    with pytest.raises(NotIndexedError):
        await list_definitions(orchestrator, "sample@1.0.0", Kind.STRUCT)
    with pytest.raises(NotIndexedError):
        await read_readme(orchestrator, "sample-1.0.0")
    assert registry.metadata_calls == []
    assert registry.download_calls == []


@pytest.mark.anyio
async def test_results_are_capped(store, registry, tmp_path) -> None:
    config = AppConfig(database_url="memory://", data_dir=str(tmp_path / "data"), max_results=2)
    orchestrator = build_query_orchestrator(store=store, registry=registry, config=config)

    listed = await list_definitions(orchestrator, "sample", Kind.FUNCTION)
    assert len(listed.items) == 2
    assert listed.truncated is True

    searched = await search_crate(orchestrator, "sample", "pub")
    assert len(searched.matches) == 2
    assert searched.truncated is True


@pytest.mark.anyio
async def test_fetch_and_latest(orchestrator, registry) -> None:
    before = await latest_version(orchestrator, "sample")
    assert before.version == "1.0.0"
    assert before.indexed is False

    fetched = await fetch_crate(orchestrator, "sample")
    assert fetched.version == "1.0.0"
    assert fetched.summary.definition_count == 18

    after = await latest_version(orchestrator, "sample")
    assert after.indexed is True
    assert after.indexed_versions == ["1.0.0"]

    with pytest.raises(InvalidQueryError):
        await fetch_crate(orchestrator, "sample@1.0.0", "2.0.0")


@pytest.mark.anyio
async def test_prune_removes_version(orchestrator, config) -> None:
    fetched = await fetch_crate(orchestrator, "sample", "1.0.0")
    assert os.path.isdir(fetched.summary.source_root)

    pruned = await prune_crate(orchestrator, "sample", "1.0.0", remove_source=True)
    assert pruned.removed is True
    assert pruned.source_removed is True
    assert not os.path.exists(fetched.summary.source_root)

    with pytest.raises(NotIndexedError):
        await list_definitions(orchestrator, "sample@1.0.0", Kind.STRUCT)

    again = await prune_crate(orchestrator, "sample", "1.0.0")
    assert again.removed is False


@pytest.mark.anyio
async def test_prune_keeps_other_versions(registry, config) -> None:
    store = InMemoryIndexStore()
    registry.crates["sample"]["1.2.0"] = sample_crate_files(version="1.2.0")
    orchestrator = build_query_orchestrator(store=store, registry=registry, config=config)
    await fetch_crate(orchestrator, "sample", "1.0.0")
    await fetch_crate(orchestrator, "sample", "1.2.0")

    await prune_crate(orchestrator, "sample", "1.2.0")
    assert [p.version for p in store.list_versions("sample")] == ["1.0.0"]
    remaining = await list_definitions(orchestrator, "sample@1.0.0", Kind.TRAIT)
    assert [d.name for d in remaining.items] == ["Render"]


@pytest.mark.anyio
async def test_line_numbers_ignore_form_feeds_and_unicode_separators(store, config) -> None:
    source = "// section one\x0c section two\u2028 three\npub struct Target {\n    pub x: u8,\n}\n// tail more\r\npub fn after() {}\n"
    registry = FakeRegistry(
        {
            "paged": {
                "0.1.0": {
                    "Cargo.toml": '[package]\nname = "paged"\nversion = "0.1.0"\n',
                    "src/lib.rs": source,
                }
            }
        }
    )
    orchestrator = build_query_orchestrator(store=store, registry=registry, config=config)

    listed = await list_definitions(orchestrator, "paged", Kind.STRUCT, "^Target$")
    target = listed.items[0]
    assert (target.start_line, target.end_line) == (2, 4)

    detail = await show_definition(orchestrator, target.id)
    assert detail.source == "pub struct Target {\n    pub x: u8,\n}\n"

    found = await search_crate(orchestrator, "paged", "pub struct Target")
    assert [m.line for m in found.matches] == [target.start_line]

    found = await search_crate(orchestrator, "paged", "tail")
    assert [(m.line, m.text) for m in found.matches] == [(5, "// tail more")]

    after = await list_definitions(orchestrator, "paged", Kind.FUNCTION, "^after$")
    assert after.items[0].start_line == 6

    whole = await read_file(orchestrator, "paged@0.1.0", "src/lib.rs")
    assert whole.total_lines == 6
    assert whole.text == source
