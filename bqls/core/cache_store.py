"""
Local schema cache
- project → dataset → table → column hierarchy mirrored from the warehouse
- every replace_* call swaps exactly one scope inside a single SQLite transaction
- one store file per schema version; a version bump starts from an empty store
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from bqls.config import settings
from bqls.models.schema import CacheEntry, Column, Dataset, Project, Table
from bqls.smart_logger import SmartLogger

# Bump on any change to the tables below; stores written by other versions are never opened.
CACHE_SCHEMA_VERSION = 1

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS projects (
    project TEXT PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS datasets (
    project TEXT NOT NULL,
    dataset TEXT NOT NULL,
    location TEXT,
    PRIMARY KEY (project, dataset)
);

CREATE TABLE IF NOT EXISTS table_columns (
    project TEXT NOT NULL,
    dataset TEXT NOT NULL,
    table_name TEXT NOT NULL,
    column_name TEXT NOT NULL,
    data_type TEXT NOT NULL,
    ordinal INTEGER NOT NULL,
    PRIMARY KEY (project, dataset, table_name, column_name)
);
"""

CachePredicate = Callable[[CacheEntry], bool]


def store_path_for(cache_dir: str, version: int = CACHE_SCHEMA_VERSION) -> Path:
    return Path(cache_dir).expanduser() / f"cache_v{version}.sqlite"


class CacheStoreError(Exception):
    """Raised when the cache store is used before initialize() or after close()"""
    pass


class CacheStore:
    """SQLite-backed schema cache with scoped, atomic replaces."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else store_path_for(settings.cache_dir)
        self._conn: Optional[aiosqlite.Connection] = None
        # Serializes every statement on the shared connection so a reader never
        # lands between the DELETE and INSERT of an open replace transaction.
        self._lock = asyncio.Lock()

    # ---------- lifecycle ----------

    async def initialize(self) -> None:
        """Open the store and create missing tables (idempotent)."""
        if self._conn is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(self.path), isolation_level=None)
        await conn.executescript(SCHEMA_SQL)
        self._conn = conn
        SmartLogger.log(
            "INFO",
            "cache_store.initialized",
            category="cache_store",
            params={"path": str(self.path), "schema_version": CACHE_SCHEMA_VERSION},
            max_inline_chars=0,
        )

    async def close(self) -> None:
        """Flush the write-ahead log into the main file and close (idempotent)."""
        if self._conn is None:
            return
        async with self._lock:
            conn, self._conn = self._conn, None
            try:
                await conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            finally:
                await conn.close()
        SmartLogger.log("INFO", "cache_store.closed", category="cache_store", params={"path": str(self.path)})

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise CacheStoreError(f"Cache store is not open: {self.path}")
        return self._conn

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = self._require_conn()
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    async def _fetchall(self, sql: str, params: Tuple = ()) -> List[aiosqlite.Row]:
        conn = self._require_conn()
        async with self._lock:
            return list(await conn.execute_fetchall(sql, params))

    # ---------- writes ----------

    async def clear(self) -> None:
        """Empty the whole store (used before a forced full rebuild)."""
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM table_columns")
            await conn.execute("DELETE FROM datasets")
            await conn.execute("DELETE FROM projects")
        SmartLogger.log("INFO", "cache_store.cleared", category="cache_store", params={"path": str(self.path)})

    async def replace_projects(self, projects: Iterable[Project]) -> int:
        """Swap the full project list. Returns the number of stored projects."""
        rows = [(p.id,) for p in projects]
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM projects")
            await conn.executemany("INSERT OR IGNORE INTO projects (project) VALUES (?)", rows)
        return len({r[0] for r in rows})

    async def replace_datasets(self, project: str, datasets: Iterable[Dataset]) -> int:
        """Swap the dataset list of one project. Datasets of other projects are ignored."""
        rows = [(project, d.id, d.location) for d in datasets if d.project == project]
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM datasets WHERE project = ?", (project,))
            await conn.executemany(
                "INSERT OR IGNORE INTO datasets (project, dataset, location) VALUES (?, ?, ?)",
                rows,
            )
        return len({r[1] for r in rows})

    async def replace_columns(self, project: str, dataset: str, tables: Iterable[Table]) -> int:
        """Swap all table/column rows of one dataset. Returns the number of stored tables."""
        rows = []
        table_ids = set()
        for table in tables:
            table_ids.add(table.id)
            for ordinal, column in enumerate(table.columns):
                rows.append((project, dataset, table.id, column.name, column.data_type, ordinal))
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM table_columns WHERE project = ? AND dataset = ?",
                (project, dataset),
            )
            await conn.executemany(
                """
                INSERT OR IGNORE INTO table_columns
                    (project, dataset, table_name, column_name, data_type, ordinal)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(table_ids)

    # ---------- reads ----------

    async def list_projects(self) -> List[Project]:
        rows = await self._fetchall("SELECT project FROM projects ORDER BY project")
        return [Project(id=r[0]) for r in rows]

    async def list_datasets(self, project: str) -> List[Dataset]:
        rows = await self._fetchall(
            "SELECT project, dataset, location FROM datasets WHERE project = ? ORDER BY dataset",
            (project,),
        )
        return [Dataset(project=r[0], id=r[1], location=r[2]) for r in rows]

    async def list_tables(self, project: str, dataset: str) -> List[Table]:
        rows = await self._fetchall(
            """
            SELECT table_name, column_name, data_type
            FROM table_columns
            WHERE project = ? AND dataset = ?
            ORDER BY table_name, ordinal
            """,
            (project, dataset),
        )
        tables: Dict[str, Table] = {}
        for table_name, column_name, data_type in rows:
            table = tables.setdefault(table_name, Table(project=project, dataset=dataset, id=table_name))
            table.columns.append(Column(name=column_name, data_type=data_type))
        return list(tables.values())

    async def list_columns(self, project: str, dataset: str, table: str) -> List[Column]:
        rows = await self._fetchall(
            """
            SELECT column_name, data_type
            FROM table_columns
            WHERE project = ? AND dataset = ? AND table_name = ?
            ORDER BY ordinal
            """,
            (project, dataset, table),
        )
        return [Column(name=r[0], data_type=r[1]) for r in rows]

    async def query(self, predicate: Optional[CachePredicate] = None) -> List[CacheEntry]:
        """
        Return every cached entry matching ``predicate`` (all entries when None).

        The three reads run under one lock acquisition, so the result is a
        consistent snapshot across scopes.
        """
        conn = self._require_conn()
        async with self._lock:
            project_rows = await conn.execute_fetchall("SELECT project FROM projects ORDER BY project")
            dataset_rows = await conn.execute_fetchall(
                "SELECT project, dataset, location FROM datasets ORDER BY project, dataset"
            )
            column_rows = await conn.execute_fetchall(
                """
                SELECT c.project, c.dataset, c.table_name, c.column_name, c.data_type, d.location
                FROM table_columns c
                LEFT JOIN datasets d ON d.project = c.project AND d.dataset = c.dataset
                ORDER BY c.project, c.dataset, c.table_name, c.ordinal
                """
            )

        entries: List[CacheEntry] = [CacheEntry(project=r[0]) for r in project_rows]
        entries.extend(CacheEntry(project=r[0], dataset=r[1], location=r[2]) for r in dataset_rows)

        tables: Dict[Tuple[str, str, str], CacheEntry] = {}
        for project, dataset, table_name, column_name, data_type, location in column_rows:
            key = (project, dataset, table_name)
            entry = tables.get(key)
            if entry is None:
                entry = CacheEntry(project=project, dataset=dataset, table=table_name, location=location)
                tables[key] = entry
            entry.columns.append(Column(name=column_name, data_type=data_type))
        entries.extend(tables.values())

        if predicate is None:
            return entries
        return [e for e in entries if predicate(e)]
