"""Remote directory backed by the BigQuery API client"""
import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import bigquery

from bqls.config import settings
from bqls.core.errors import DryRunValidationError, RemoteUnavailable
from bqls.core.remote_directory import (
    DryRunResult,
    RemoteDirectory,
    build_columns_query,
    parse_column_rows,
)
from bqls.models.schema import Dataset, Project, Table

# Errors that mean "the warehouse said no" rather than "the warehouse is unreachable".
_QUERY_REJECTIONS = (google_exceptions.BadRequest, google_exceptions.NotFound)

_TRANSPORT_ERRORS = (google_exceptions.GoogleAPIError, auth_exceptions.GoogleAuthError, OSError)


class BigQueryDirectory(RemoteDirectory):
    """
    Warehouse access through google-cloud-bigquery.

    The client library is synchronous, so every call runs in a worker thread and
    is bounded by ``timeout`` seconds. A call that times out keeps running in its
    thread; its result is simply never awaited.
    """

    def __init__(
        self,
        client: Optional[bigquery.Client] = None,
        *,
        timeout: Optional[float] = None,
        row_limit: Optional[int] = None,
        extra_projects: Optional[Sequence[str]] = None,
        enumerate_projects: Optional[bool] = None,
    ):
        self._client = client
        self.timeout = timeout if timeout is not None else settings.remote_timeout_seconds
        self.row_limit = row_limit if row_limit is not None else settings.column_query_row_limit
        self.extra_projects = list(extra_projects) if extra_projects is not None else settings.target_project_list()
        self.enumerate_projects = enumerate_projects if enumerate_projects is not None else settings.enumerate_projects

    def _get_client(self) -> bigquery.Client:
        if self._client is None:
            self._client = bigquery.Client(project=settings.default_project or None)
        return self._client

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise RemoteUnavailable(f"{operation} timed out after {self.timeout} seconds") from e
        except _TRANSPORT_ERRORS as e:
            raise RemoteUnavailable(f"{operation} failed: {e}") from e

    # ---------- sync bodies (worker thread) ----------

    def _list_projects_sync(self) -> List[str]:
        client = self._get_client()
        ids: List[str] = []
        if client.project:
            ids.append(client.project)
        ids.extend(self.extra_projects)
        if self.enumerate_projects:
            ids.extend(p.project_id for p in client.list_projects())
        return ids

    def _list_datasets_sync(self, project: str) -> List[Dataset]:
        client = self._get_client()
        datasets = []
        for item in client.list_datasets(project=project):
            # list items do not carry the location; the full resource does
            full = client.get_dataset(item.reference)
            datasets.append(Dataset(project=project, id=item.dataset_id, location=full.location))
        return datasets

    def _list_columns_sync(self, dataset: Dataset) -> List[Dict[str, Any]]:
        client = self._get_client()
        sql = build_columns_query(dataset.project, dataset.id, self.row_limit)
        job = client.query(sql, location=dataset.location)
        rows = job.result(timeout=self.timeout, max_results=self.row_limit)
        return [{"table": row["table"], "columns": list(row["columns"] or [])} for row in rows]

    def _dry_run_sync(self, text: str) -> Optional[int]:
        client = self._get_client()
        job_config = bigquery.QueryJobConfig(dry_run=True, use_query_cache=False)
        try:
            job = client.query(text, job_config=job_config)
        except _QUERY_REJECTIONS as e:
            raise DryRunValidationError(e.message) from e
        return job.total_bytes_processed

    # ---------- RemoteDirectory ----------

    async def list_projects(self) -> List[Project]:
        ids = await self._call("list_projects", self._list_projects_sync)
        unique = dict.fromkeys(i for i in ids if i)
        return [Project(id=i) for i in unique]

    async def list_datasets(self, project: str) -> List[Dataset]:
        return await self._call(f"list_datasets({project})", self._list_datasets_sync, project)

    async def list_columns(self, dataset: Dataset) -> List[Table]:
        rows = await self._call(
            f"list_columns({dataset.project}.{dataset.id})", self._list_columns_sync, dataset
        )
        return parse_column_rows(dataset.project, dataset.id, rows)

    async def dry_run(self, text: str) -> DryRunResult:
        processed = await self._call("dry_run", self._dry_run_sync, text)
        return DryRunResult(processed_bytes=int(processed) if processed is not None else None)

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
