"""
Schema refresh cycle

One cycle walks the warehouse top-down and replaces the cache one scope at a time:

1. project list (a failure here aborts the cycle)
2. datasets per project (a failure keeps that project's cached datasets)
3. columns per dataset, only for datasets whose id appears in an open document
   (a failure keeps that dataset's cached columns)

Overlapping triggers are coalesced: at most one cycle runs at a time, and
triggers that arrive meanwhile are folded into a single follow-up cycle that
uses the most recent document texts.
"""

from __future__ import annotations

import asyncio
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from bqls.config import settings
from bqls.core.cache_store import CacheStore
from bqls.core.errors import RemoteDirectoryError
from bqls.core.remote_directory import RemoteDirectory
from bqls.models.schema import Dataset, Project, merge_folded_tables
from bqls.smart_logger import SmartLogger


@dataclass(frozen=True)
class ScopeFailure:
    scope: str
    error: str


@dataclass
class RefreshReport:
    aborted: bool = False
    error: Optional[str] = None
    projects: int = 0
    dataset_scopes_refreshed: int = 0
    column_scopes_refreshed: int = 0
    column_scopes_skipped: int = 0
    failures: List[ScopeFailure] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.aborted and not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "aborted": self.aborted,
            "error": self.error,
            "projects": self.projects,
            "dataset_scopes_refreshed": self.dataset_scopes_refreshed,
            "column_scopes_refreshed": self.column_scopes_refreshed,
            "column_scopes_skipped": self.column_scopes_skipped,
            "failures": [{"scope": f.scope, "error": f.error} for f in self.failures],
            "duration_ms": round(self.duration_ms, 2),
        }


def is_referenced(dataset: Dataset, texts: Sequence[str]) -> bool:
    """Substring gate: fetch columns only for datasets named somewhere in an open document."""
    return any(dataset.id in text for text in texts)


class SchemaFetcher:
    def __init__(
        self,
        cache: CacheStore,
        directory: RemoteDirectory,
        *,
        column_fetch_concurrency: Optional[int] = None,
    ):
        self.cache = cache
        self.directory = directory
        self.column_fetch_concurrency = max(
            1,
            int(column_fetch_concurrency if column_fetch_concurrency is not None else settings.column_fetch_concurrency),
        )
        self._inflight: Optional[asyncio.Task] = None
        self._pending_texts: Optional[List[str]] = None
        self._pending_fetch_all = False

    @property
    def is_refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def refresh(self, open_document_texts: Sequence[str], fetch_all_columns: bool = False) -> RefreshReport:
        """
        Run (or join) a refresh cycle and return the report of the last cycle that
        covered this request.

        ``fetch_all_columns`` lifts the open-document gate, so every listed dataset
        gets its columns refreshed. Coalesced requests keep it if any of them set it.
        """
        self._pending_texts = list(open_document_texts)
        self._pending_fetch_all = self._pending_fetch_all or fetch_all_columns
        if not self.is_refreshing:
            self._inflight = asyncio.create_task(self._drain(), name="schema_refresh")
        return await asyncio.shield(self._inflight)

    async def _drain(self) -> RefreshReport:
        report = RefreshReport()
        while self._pending_texts is not None:
            texts, self._pending_texts = self._pending_texts, None
            fetch_all, self._pending_fetch_all = self._pending_fetch_all, False
            report = await self._run_cycle(texts, fetch_all)
        return report

    # ---------- one cycle ----------

    async def _run_cycle(self, texts: List[str], fetch_all: bool = False) -> RefreshReport:
        started = time.perf_counter()
        report = RefreshReport()

        try:
            projects = await self.directory.list_projects()
            report.projects = await self.cache.replace_projects(projects)
        except Exception as exc:
            report.aborted = True
            report.error = str(exc) or type(exc).__name__
            self._log_failure("projects", exc, level="ERROR", event="schema_fetcher.cycle.aborted")
            report.duration_ms = (time.perf_counter() - started) * 1000
            return report

        semaphore = asyncio.Semaphore(self.column_fetch_concurrency)
        await asyncio.gather(*(self._refresh_project(p, texts, fetch_all, report, semaphore) for p in projects))

        report.duration_ms = (time.perf_counter() - started) * 1000
        SmartLogger.log(
            "INFO" if report.ok else "WARNING",
            "schema_fetcher.cycle.completed",
            category="schema_fetcher",
            params=report.to_dict(),
            max_inline_chars=0,
        )
        return report

    async def _refresh_project(
        self,
        project: Project,
        texts: List[str],
        fetch_all: bool,
        report: RefreshReport,
        semaphore: asyncio.Semaphore,
    ) -> None:
        scope = project.id
        try:
            datasets = await self.directory.list_datasets(project.id)
            await self.cache.replace_datasets(project.id, datasets)
        except Exception as exc:
            report.failures.append(ScopeFailure(scope=scope, error=str(exc) or type(exc).__name__))
            self._log_failure(scope, exc, event="schema_fetcher.datasets.failed")
            return
        report.dataset_scopes_refreshed += 1

        referenced = []
        for dataset in datasets:
            if fetch_all or is_referenced(dataset, texts):
                referenced.append(dataset)
            else:
                report.column_scopes_skipped += 1

        await asyncio.gather(*(self._refresh_columns(d, report, semaphore) for d in referenced))

    async def _refresh_columns(self, dataset: Dataset, report: RefreshReport, semaphore: asyncio.Semaphore) -> None:
        scope = f"{dataset.project}.{dataset.id}"
        async with semaphore:
            try:
                tables = merge_folded_tables(await self.directory.list_columns(dataset))
                await self.cache.replace_columns(dataset.project, dataset.id, tables)
            except Exception as exc:
                report.failures.append(ScopeFailure(scope=scope, error=str(exc) or type(exc).__name__))
                self._log_failure(scope, exc, event="schema_fetcher.columns.failed")
                return
        report.column_scopes_refreshed += 1

    @staticmethod
    def _log_failure(scope: str, exc: BaseException, *, event: str, level: str = "WARNING") -> None:
        params: Dict[str, Any] = {"scope": scope, "error": str(exc), "type": type(exc).__name__}
        if not isinstance(exc, RemoteDirectoryError):
            params["traceback"] = traceback.format_exc()
        SmartLogger.log(level, event, category="schema_fetcher", params=params, max_inline_chars=0)
