from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEPENDENCY_TABLES = (
    "dependencies",
    "build-dependencies",
    "build_dependencies",
    "dev-dependencies",
    "dev_dependencies",
)


@dataclass(frozen=True)
class DependencySpec:
    alias: str
    package: str
    requirement: str = "*"


@dataclass(frozen=True)
class CrateManifest:
    name: str | None = None
    version: str | None = None
    readme: str | None = None
    dependencies: dict[str, DependencySpec] = field(default_factory=dict)

    def find_dependency(self, root: str) -> DependencySpec | None:
        return self.dependencies.get(normalize_crate_name(root))


def normalize_crate_name(name: str) -> str:
    return name.replace("_", "-")


def read_manifest(source_root: str) -> CrateManifest:
    path = os.path.join(source_root, "Cargo.toml")
    if not os.path.isfile(path):
        return CrateManifest()
    try:
        with open(path, "rb") as handle:
            data = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        logger.warning(f"Ignoring unreadable manifest {path}: {exc}")
        return CrateManifest()
    return manifest_from_mapping(data)


def parse_manifest(text: str) -> CrateManifest:
    return manifest_from_mapping(tomllib.loads(text))


def manifest_from_mapping(data: Mapping[str, object]) -> CrateManifest:
    package = data.get("package")
    package = package if isinstance(package, Mapping) else {}

    dependencies: dict[str, DependencySpec] = {}
    _collect_dependencies(data, dependencies)
    target = data.get("target")
    if isinstance(target, Mapping):
        for cfg_table in target.values():
            if isinstance(cfg_table, Mapping):
                _collect_dependencies(cfg_table, dependencies)

    name = package.get("name")
    version = package.get("version")
    return CrateManifest(
        name=name if isinstance(name, str) else None,
        version=version if isinstance(version, str) else None,
        readme=_readme_field(package.get("readme")),
        dependencies=dependencies,
    )


def _collect_dependencies(table: Mapping[str, object], out: dict[str, DependencySpec]) -> None:
    for section in DEPENDENCY_TABLES:
        entries = table.get(section)
        if not isinstance(entries, Mapping):
            continue
        for alias, value in entries.items():
            spec = _dependency_spec(alias=alias, value=value)
            out.setdefault(normalize_crate_name(alias), spec)


def _dependency_spec(alias: str, value: object) -> DependencySpec:
    if isinstance(value, str):
        return DependencySpec(alias=alias, package=alias, requirement=value.strip() or "*")
    if isinstance(value, Mapping):
        package = value.get("package")
        requirement = value.get("version")
        return DependencySpec(
            alias=alias,
            package=package if isinstance(package, str) and package else alias,
            requirement=requirement.strip() if isinstance(requirement, str) and requirement.strip() else "*",
        )
    return DependencySpec(alias=alias, package=alias)


def _readme_field(value: object) -> str | None:
    # Cargo 允许 readme = true，表示默认的 README.md
    if value is True:
        return "README.md"
    if isinstance(value, str) and value:
        return value
    return None
