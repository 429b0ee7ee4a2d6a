"""Remote schema/query directory: the warehouse as seen by the cache and the validator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from bqls.core.errors import MalformedResponse
from bqls.models.schema import Column, Dataset, Project, Table

# Same folding as normalize_table_name, applied inside the warehouse so shards group together.
COLUMNS_QUERY_TEMPLATE = """
SELECT
  table_catalog AS project,
  table_schema AS dataset,
  REGEXP_REPLACE(table_name, r"([^0-9])[0-9]{{8,}}$", r"\\1*") AS table,
  ARRAY_AGG(STRUCT(column_name AS column, data_type) ORDER BY ordinal_position) AS columns,
FROM `{project}`.`{dataset}`.INFORMATION_SCHEMA.COLUMNS
GROUP BY project, dataset, table
LIMIT {limit};
"""


def build_columns_query(project: str, dataset: str, limit: int) -> str:
    for name in (project, dataset):
        if "`" in name:
            raise ValueError(f"Invalid identifier: {name!r}")
    return COLUMNS_QUERY_TEMPLATE.format(project=project, dataset=dataset, limit=int(limit))


def parse_column_rows(project: str, dataset: str, rows: Iterable[Dict[str, Any]]) -> List[Table]:
    """
    Convert grouped INFORMATION_SCHEMA rows into tables.

    Each row is ``{"table": str, "columns": [{"column": str, "data_type": str}, ...]}``.

    Raises:
        MalformedResponse: if a row does not have that shape.
    """
    tables: List[Table] = []
    for row in rows:
        try:
            table_name = row["table"]
            raw_columns = row["columns"]
        except (KeyError, TypeError) as e:
            raise MalformedResponse(f"Unexpected column metadata row for {project}.{dataset}: {row!r}") from e
        if not isinstance(table_name, str) or not isinstance(raw_columns, list):
            raise MalformedResponse(f"Unexpected column metadata row for {project}.{dataset}: {row!r}")
        columns = []
        for raw in raw_columns:
            try:
                columns.append(Column(name=str(raw["column"]), data_type=str(raw["data_type"])))
            except (KeyError, TypeError) as e:
                raise MalformedResponse(
                    f"Unexpected column entry in {project}.{dataset}.{table_name}: {raw!r}"
                ) from e
        tables.append(Table(project=project, dataset=dataset, id=table_name, columns=columns))
    return tables


@dataclass
class DryRunResult:
    """Dry-run outcome; processed_bytes is None when the service reports no estimate."""

    processed_bytes: Optional[int] = None


class RemoteDirectory(ABC):
    """Abstract base class for warehouse access used by the fetcher and the validator."""

    @abstractmethod
    async def list_projects(self) -> List[Project]:
        """List every project visible to the current credentials.

        Raises:
            RemoteUnavailable, MalformedResponse
        """
        pass

    @abstractmethod
    async def list_datasets(self, project: str) -> List[Dataset]:
        """List the datasets of a project, each with its location.

        Raises:
            RemoteUnavailable, MalformedResponse
        """
        pass

    @abstractmethod
    async def list_columns(self, dataset: Dataset) -> List[Table]:
        """Run the grouped column-metadata query for one dataset.

        The query is routed to ``dataset.location`` and capped at the configured
        row limit. Table ids come back folded on their shard suffix.

        Raises:
            RemoteUnavailable, MalformedResponse
        """
        pass

    @abstractmethod
    async def dry_run(self, text: str) -> DryRunResult:
        """Validate ``text`` without executing it.

        Raises:
            DryRunValidationError: the warehouse rejected the query.
            RemoteUnavailable: the warehouse could not be reached.
        """
        pass

    async def close(self) -> None:
        """Release client resources."""
        return None
