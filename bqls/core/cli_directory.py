"""
Remote directory backed by the `bq` / `gcloud` command-line tools.

Useful where the Cloud SDK is already authenticated but application-default
credentials are not configured. Every command runs as an asyncio subprocess with
a bounded timeout.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from bqls.config import settings
from bqls.core.errors import DryRunValidationError, MalformedResponse, RemoteUnavailable
from bqls.core.remote_directory import (
    DryRunResult,
    RemoteDirectory,
    build_columns_query,
    parse_column_rows,
)
from bqls.models.schema import Dataset, Project, Table

# `bq query` prefixes warehouse rejections with one of these.
_QUERY_ERROR_MARKERS = ("Error in query string", "Invalid query", "Not found:", "Syntax error")

_BYTES_PATTERN = re.compile(r"process\s+(\d+)\s+bytes")

_PROJECT_LIST_LIMIT = 10000


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


CommandRunner = Callable[[Sequence[str], float], Awaitable[CommandResult]]


async def run_command(argv: Sequence[str], timeout: float) -> CommandResult:
    """Run ``argv`` without a shell and collect its output."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise RemoteUnavailable(f"Failed to start {argv[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise RemoteUnavailable(f"{argv[0]} {' '.join(argv[1:3])} timed out after {timeout} seconds") from e

    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def _load_json(result: CommandResult, what: str) -> Any:
    text = result.stdout.strip()
    if not text:
        return []
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"{what}: output is not JSON: {text[:200]!r}") from e


class BigQueryCliDirectory(RemoteDirectory):
    """Warehouse access through `bq` (listing, queries, dry runs) and `gcloud` (default project)."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        *,
        bq_path: Optional[str] = None,
        gcloud_path: Optional[str] = None,
        timeout: Optional[float] = None,
        row_limit: Optional[int] = None,
        default_project: Optional[str] = None,
        extra_projects: Optional[Sequence[str]] = None,
        enumerate_projects: Optional[bool] = None,
    ):
        self.runner = runner or run_command
        self.bq_path = bq_path or settings.bq_cli_path
        self.gcloud_path = gcloud_path or settings.gcloud_cli_path
        self.timeout = timeout if timeout is not None else settings.remote_timeout_seconds
        self.row_limit = row_limit if row_limit is not None else settings.column_query_row_limit
        self.default_project = default_project if default_project is not None else settings.default_project
        self.extra_projects = list(extra_projects) if extra_projects is not None else settings.target_project_list()
        self.enumerate_projects = enumerate_projects if enumerate_projects is not None else settings.enumerate_projects

    async def _bq(self, *args: str) -> CommandResult:
        argv = [self.bq_path, "--headless", "--format=json", *args]
        return await self.runner(argv, self.timeout)

    async def _checked_bq(self, what: str, *args: str) -> Any:
        result = await self._bq(*args)
        if result.returncode != 0:
            raise RemoteUnavailable(f"{what} failed (exit {result.returncode}): {result.output[:500]}")
        return _load_json(result, what)

    async def resolve_default_project(self) -> str:
        """Configured default project, else `gcloud config get-value project`."""
        if self.default_project:
            return self.default_project
        result = await self.runner([self.gcloud_path, "config", "get-value", "project"], self.timeout)
        if result.returncode != 0:
            raise RemoteUnavailable(f"gcloud config get-value project failed: {result.output[:500]}")
        self.default_project = result.stdout.strip()
        return self.default_project

    async def list_projects(self) -> List[Project]:
        ids: List[str] = [await self.resolve_default_project(), *self.extra_projects]
        if not self.enumerate_projects:
            return [Project(id=i) for i in dict.fromkeys(i for i in ids if i)]
        payload = await self._checked_bq("list_projects", "ls", "--projects", f"--max_results={_PROJECT_LIST_LIMIT}")
        if not isinstance(payload, list):
            raise MalformedResponse(f"list_projects: expected a list, got {type(payload).__name__}")
        for item in payload:
            if not isinstance(item, dict):
                raise MalformedResponse(f"list_projects: unexpected item {item!r}")
            ref = item.get("projectReference") or {}
            project_id = ref.get("projectId") or item.get("id")
            if not project_id:
                raise MalformedResponse(f"list_projects: item without project id {item!r}")
            ids.append(project_id)
        return [Project(id=i) for i in dict.fromkeys(i for i in ids if i)]

    async def list_datasets(self, project: str) -> List[Dataset]:
        payload = await self._checked_bq(
            f"list_datasets({project})",
            f"--project_id={project}",
            "ls",
            "--datasets",
            f"--max_results={self.row_limit}",
        )
        if not isinstance(payload, list):
            raise MalformedResponse(f"list_datasets({project}): expected a list, got {type(payload).__name__}")
        datasets = []
        for item in payload:
            ref = item.get("datasetReference") if isinstance(item, dict) else None
            if not ref or "datasetId" not in ref:
                raise MalformedResponse(f"list_datasets({project}): unexpected item {item!r}")
            datasets.append(Dataset(project=project, id=ref["datasetId"], location=item.get("location")))
        return datasets

    async def list_columns(self, dataset: Dataset) -> List[Table]:
        args = [f"--project_id={dataset.project}"]
        if dataset.location:
            args.append(f"--location={dataset.location}")
        sql = build_columns_query(dataset.project, dataset.id, self.row_limit)
        payload = await self._checked_bq(
            f"list_columns({dataset.project}.{dataset.id})",
            *args,
            "query",
            "--nouse_legacy_sql",
            f"--max_rows={self.row_limit}",
            "--",
            sql,
        )
        if not isinstance(payload, list):
            raise MalformedResponse(
                f"list_columns({dataset.project}.{dataset.id}): expected a list, got {type(payload).__name__}"
            )
        return parse_column_rows(dataset.project, dataset.id, payload)

    async def dry_run(self, text: str) -> DryRunResult:
        # "--" ends flag parsing, so text starting with a "--" comment stays the query
        result = await self._bq("query", "--dry_run", "--nouse_legacy_sql", "--", text)
        if result.returncode != 0:
            message = result.output
            if any(marker in message for marker in _QUERY_ERROR_MARKERS):
                raise DryRunValidationError(message)
            raise RemoteUnavailable(f"bq query --dry_run failed (exit {result.returncode}): {message[:500]}")
        return DryRunResult(processed_bytes=_parse_processed_bytes(result.stdout))


def _parse_processed_bytes(stdout: str) -> Optional[int]:
    text = stdout.strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        match = _BYTES_PATTERN.search(text)
        return int(match.group(1)) if match else None
    statistics = payload.get("statistics", {}) if isinstance(payload, dict) else {}
    raw = statistics.get("totalBytesProcessed") or statistics.get("query", {}).get("totalBytesProcessed")
    return int(raw) if raw is not None else None
