from __future__ import annotations

from crate_index.indexing.manifest import parse_manifest
from crate_index.indexing.manifest import read_manifest
from crate_index.indexing.resolver import DependencyTarget
from crate_index.indexing.resolver import discover_reexports

MANIFEST = """
[package]
name = "app"
version = "0.3.0"
readme = "docs/INTRO.md"

[dependencies]
helper-crate = "0.2"
json = { package = "serde_json", version = "1.0" }
log = { version = "0.4", optional = true }

[dev-dependencies]
pretty_assertions = "1"

[build-dependencies]
cc = "1.0"

[target.'cfg(unix)'.dependencies]
libc = "0.2"
"""


def test_parse_manifest_collects_all_dependency_tables() -> None:
    manifest = parse_manifest(MANIFEST)
    assert manifest.name == "app"
    assert manifest.version == "0.3.0"
    assert manifest.readme == "docs/INTRO.md"
    assert set(manifest.dependencies) == {"helper-crate", "json", "log", "pretty-assertions", "cc", "libc"}

    json_dep = manifest.find_dependency("json")
    assert json_dep is not None
    assert json_dep.package == "serde_json"
    assert json_dep.requirement == "1.0"
    assert manifest.find_dependency("helper_crate") is not None
    assert manifest.find_dependency("std") is None


def test_readme_true_means_default_readme() -> None:
    manifest = parse_manifest('[package]\nname = "x"\nreadme = true\n')
    assert manifest.readme == "README.md"


def test_read_manifest_tolerates_missing_and_invalid(tmp_path) -> None:
    assert read_manifest(str(tmp_path)).dependencies == {}
    (tmp_path / "Cargo.toml").write_text("[package\nname = ", encoding="utf-8")
    assert read_manifest(str(tmp_path)).name is None


def test_discover_reexports_filters_to_declared_dependencies() -> None:
    manifest = parse_manifest(MANIFEST)
    targets = discover_reexports(
        roots=["json", "std", "helper-crate", "app", "libc", "core"],
        manifest=manifest,
        package="app",
    )
    assert targets == [
        DependencyTarget(package="helper-crate", requirement="0.2"),
        DependencyTarget(package="libc", requirement="0.2"),
        DependencyTarget(package="serde_json", requirement="1.0"),
    ]


def test_discover_reexports_ignores_self_dependency() -> None:
    manifest = parse_manifest('[package]\nname = "self-ref"\n\n[dependencies]\nself_ref = "1"\n')
    assert discover_reexports(roots=["self-ref"], manifest=manifest, package="self-ref") == []
