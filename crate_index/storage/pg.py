from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence

import psycopg
from psycopg.types.json import Jsonb

from crate_index.errors import IOFailureError
from crate_index.storage.base import filter_definitions
from crate_index.storage.base import select_latest
from crate_index.storage.base import slice_lines
from crate_index.storage.models import Definition
from crate_index.storage.models import DependencyEdge
from crate_index.storage.models import Kind
from crate_index.storage.models import Member
from crate_index.storage.models import PackageStats
from crate_index.storage.models import PackageVersion
from crate_index.storage.models import SourceFile

logger = logging.getLogger(__name__)

_DEFINITION_COLUMNS = (
    "id, package, version, kind, name, path, start_line, end_line, start_byte, end_byte, "
    "signature, docs, visibility, parent_id, trait_name, qualifier, members"
)


class IndexStorageClient:
    """Postgres 连接器。"""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def connect(self) -> psycopg.Connection:
        return psycopg.connect(self._dsn)


def ensure_schema(client: IndexStorageClient) -> None:
    with client.connect() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS package_versions (
                    name TEXT NOT NULL,
                    version TEXT NOT NULL,
                    ingested_at TIMESTAMPTZ NOT NULL,
                    source_root TEXT NOT NULL,
                    PRIMARY KEY (name, version)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS definitions (
                    id TEXT PRIMARY KEY,
                    package TEXT NOT NULL,
                    version TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    name TEXT NOT NULL,
                    path TEXT NOT NULL,
                    start_line INTEGER NOT NULL,
                    end_line INTEGER NOT NULL,
                    start_byte INTEGER NOT NULL,
                    end_byte INTEGER NOT NULL,
                    signature TEXT NOT NULL,
                    docs TEXT,
                    visibility TEXT NOT NULL,
                    parent_id TEXT,
                    trait_name TEXT,
                    qualifier TEXT,
                    members JSONB NOT NULL,
                    FOREIGN KEY (package, version) REFERENCES package_versions (name, version) ON DELETE CASCADE
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS source_files (
                    package TEXT NOT NULL,
                    version TEXT NOT NULL,
                    path TEXT NOT NULL,
                    content TEXT NOT NULL,
                    PRIMARY KEY (package, version, path),
                    FOREIGN KEY (package, version) REFERENCES package_versions (name, version) ON DELETE CASCADE
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS dependency_edges (
                    package TEXT NOT NULL,
                    version TEXT NOT NULL,
                    target TEXT NOT NULL,
                    requirement TEXT NOT NULL,
                    PRIMARY KEY (package, version, target),
                    FOREIGN KEY (package, version) REFERENCES package_versions (name, version) ON DELETE CASCADE
                )
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_definitions_package_kind
                ON definitions (package, version, kind)
                """
            )
        conn.commit()


class PgIndexStore:
    """Postgres 实现：一次 put 一个事务 + advisory lock（跨进程互斥同一个 key）。"""

    def __init__(self, client: IndexStorageClient) -> None:
        self._client = client

    def put(
        self,
        package: PackageVersion,
        definitions: Sequence[Definition],
        files: Sequence[SourceFile],
        edges: Sequence[DependencyEdge],
    ) -> None:
        try:
            with self._client.connect() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        cur.execute(
                            "SELECT pg_advisory_xact_lock(hashtext(%s))",
                            (f"{package.name}@{package.version}",),
                        )
                        cur.execute(
                            "DELETE FROM package_versions WHERE name = %s AND version = %s",
                            (package.name, package.version),
                        )
                        cur.execute(
                            """
                            INSERT INTO package_versions (name, version, ingested_at, source_root)
                            VALUES (%s, %s, %s, %s)
                            """,
                            (package.name, package.version, package.ingested_at, package.source_root),
                        )
                        if definitions:
                            cur.executemany(
                                f"""
                                INSERT INTO definitions ({_DEFINITION_COLUMNS})
                                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                                """,
                                [_definition_params(d) for d in definitions],
                            )
                        if files:
                            cur.executemany(
                                "INSERT INTO source_files (package, version, path, content) VALUES (%s, %s, %s, %s)",
                                [(f.package, f.version, f.path, f.content) for f in files],
                            )
                        if edges:
                            cur.executemany(
                                """
                                INSERT INTO dependency_edges (package, version, target, requirement)
                                VALUES (%s, %s, %s, %s)
                                """,
                                [(e.package, e.version, e.target, e.requirement) for e in edges],
                            )
        except psycopg.Error as exc:
            logger.error(f"Index store write failed for {package.name}@{package.version}: {exc}")
            raise IOFailureError(f"Index store write failed for {package.name}@{package.version}: {exc}") from exc

    def get_package(self, name: str, version: str) -> PackageVersion | None:
        rows = self._fetch(
            "SELECT name, version, ingested_at, source_root FROM package_versions WHERE name = %s AND version = %s",
            (name, version),
        )
        if not rows:
            return None
        return _row_to_package(rows[0])

    def list_versions(self, name: str) -> list[PackageVersion]:
        rows = self._fetch(
            "SELECT name, version, ingested_at, source_root FROM package_versions WHERE name = %s",
            (name,),
        )
        return [_row_to_package(row) for row in rows]

    def latest_package(self, name: str) -> PackageVersion | None:
        return select_latest(self.list_versions(name))

    def prune(self, name: str, version: str) -> bool:
        try:
            with self._client.connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "DELETE FROM package_versions WHERE name = %s AND version = %s",
                        (name, version),
                    )
                    deleted = cur.rowcount
                conn.commit()
        except psycopg.Error as exc:
            logger.error(f"Index store prune failed for {name}@{version}: {exc}")
            raise IOFailureError(f"Index store prune failed for {name}@{version}: {exc}") from exc
        return deleted > 0

    def get_by_id(self, definition_id: str) -> Definition | None:
        rows = self._fetch(f"SELECT {_DEFINITION_COLUMNS} FROM definitions WHERE id = %s", (definition_id,))
        if not rows:
            return None
        return _row_to_definition(rows[0])

    def scan(
        self,
        name: str,
        version: str | None,
        kind: Kind,
        name_pattern: str | None = None,
    ) -> list[Definition]:
        if version is None:
            latest = self.latest_package(name)
            if latest is None:
                return []
            version = latest.version
        rows = self._fetch(
            f"SELECT {_DEFINITION_COLUMNS} FROM definitions WHERE package = %s AND version = %s AND kind = %s",
            (name, version, kind.value),
        )
        return filter_definitions((_row_to_definition(row) for row in rows), name_pattern)

    def get_source_file(self, name: str, version: str, path: str) -> SourceFile | None:
        rows = self._fetch(
            "SELECT package, version, path, content FROM source_files WHERE package = %s AND version = %s AND path = %s",
            (name, version, path),
        )
        if not rows:
            return None
        return SourceFile(package=rows[0][0], version=rows[0][1], path=rows[0][2], content=rows[0][3])

    def iter_source_files(self, name: str, version: str) -> Iterator[SourceFile]:
        rows = self._fetch(
            "SELECT package, version, path, content FROM source_files WHERE package = %s AND version = %s ORDER BY path",
            (name, version),
        )
        for row in rows:
            yield SourceFile(package=row[0], version=row[1], path=row[2], content=row[3])

    def read_file(
        self,
        name: str,
        version: str,
        path: str,
        start_line: int | None = None,
        end_line: int | None = None,
    ) -> str | None:
        source = self.get_source_file(name, version, path)
        if source is None:
            return None
        return slice_lines(source.content, start_line, end_line)

    def dependency_edges(self, name: str, version: str) -> list[DependencyEdge]:
        rows = self._fetch(
            """
            SELECT package, version, target, requirement FROM dependency_edges
            WHERE package = %s AND version = %s ORDER BY target
            """,
            (name, version),
        )
        return [DependencyEdge(package=row[0], version=row[1], target=row[2], requirement=row[3]) for row in rows]

    def package_stats(self, name: str, version: str) -> PackageStats:
        kind_rows = self._fetch(
            "SELECT kind, COUNT(*) FROM definitions WHERE package = %s AND version = %s GROUP BY kind",
            (name, version),
        )
        file_rows = self._fetch(
            "SELECT COUNT(*) FROM source_files WHERE package = %s AND version = %s",
            (name, version),
        )
        return PackageStats(
            file_count=file_rows[0][0] if file_rows else 0,
            kind_counts={Kind(row[0]): row[1] for row in kind_rows},
        )

    def _fetch(self, query: str, params: tuple[object, ...]) -> list[tuple]:
        try:
            with self._client.connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return cur.fetchall()
        except psycopg.Error as exc:
            logger.error(f"Index store read failed: {exc}")
            raise IOFailureError(f"Index store read failed: {exc}") from exc


def _definition_params(definition: Definition) -> tuple[object, ...]:
    return (
        definition.id,
        definition.package,
        definition.version,
        definition.kind.value,
        definition.name,
        definition.path,
        definition.start_line,
        definition.end_line,
        definition.start_byte,
        definition.end_byte,
        definition.signature,
        definition.docs,
        definition.visibility,
        definition.parent_id,
        definition.trait_name,
        definition.qualifier,
        Jsonb([m.model_dump() for m in definition.members]),
    )


def _row_to_definition(row: tuple) -> Definition:
    return Definition(
        id=row[0],
        package=row[1],
        version=row[2],
        kind=Kind(row[3]),
        name=row[4],
        path=row[5],
        start_line=row[6],
        end_line=row[7],
        start_byte=row[8],
        end_byte=row[9],
        signature=row[10],
        docs=row[11],
        visibility=row[12],
        parent_id=row[13],
        trait_name=row[14],
        qualifier=row[15],
        members=[Member.model_validate(m) for m in row[16]],
    )


def _row_to_package(row: tuple) -> PackageVersion:
    return PackageVersion(name=row[0], version=row[1], ingested_at=row[2], source_root=row[3])
