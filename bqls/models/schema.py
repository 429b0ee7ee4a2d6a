"""Schema metadata mirrored from the warehouse: projects, datasets, tables, columns."""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# date-sharded tables (events_20210101, events_20210102, ...) collapse to events_*
_SHARD_SUFFIX = re.compile(r"([^0-9])[0-9]{8,}$")

SHARD_WILDCARD = "*"


def normalize_table_name(name: str) -> str:
    """Fold a trailing run of 8+ digits into ``*``: ``u_20210101`` -> ``u_*``."""
    return _SHARD_SUFFIX.sub(r"\g<1>" + SHARD_WILDCARD, name)


@dataclass(frozen=True)
class Project:
    id: str


@dataclass(frozen=True)
class Dataset:
    project: str
    id: str
    location: Optional[str] = None


@dataclass(frozen=True)
class Column:
    name: str
    data_type: str


@dataclass
class Table:
    project: str
    dataset: str
    id: str
    columns: List[Column] = field(default_factory=list)


@dataclass
class CacheEntry:
    """
    One row of the read-side view of the cache.

    A project row has ``dataset=None`` and ``table=None``; a dataset row has
    ``table=None``; a table row carries its columns.
    """

    project: str
    dataset: Optional[str] = None
    table: Optional[str] = None
    location: Optional[str] = None
    columns: List[Column] = field(default_factory=list)

    @property
    def is_project(self) -> bool:
        return self.dataset is None and self.table is None

    @property
    def is_dataset(self) -> bool:
        return self.dataset is not None and self.table is None

    @property
    def is_table(self) -> bool:
        return self.table is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "dataset": self.dataset,
            "table": self.table,
            "location": self.location,
            "columns": [{"name": c.name, "data_type": c.data_type} for c in self.columns],
        }


def merge_folded_tables(tables: List[Table]) -> List[Table]:
    """
    Normalize table ids and merge groups that fold to the same id.

    Column order follows first appearance; a column name reported by more than
    one shard keeps its first data type.
    """
    merged: Dict[str, Table] = {}
    seen_columns: Dict[str, set] = {}
    for table in tables:
        table_id = normalize_table_name(table.id)
        target = merged.get(table_id)
        if target is None:
            target = Table(project=table.project, dataset=table.dataset, id=table_id)
            merged[table_id] = target
            seen_columns[table_id] = set()
        for column in table.columns:
            if column.name in seen_columns[table_id]:
                continue
            seen_columns[table_id].add(column.name)
            target.columns.append(column)
    return list(merged.values())
