"""Service wiring and dependency injection for FastAPI"""
import asyncio
import traceback
from typing import Coroutine, Optional, Set

from fastapi import Request

from bqls.config import settings
from bqls.core.cache_store import CacheStore
from bqls.core.diagnostic_engine import DiagnosticEngine
from bqls.core.directory_factory import create_remote_directory
from bqls.core.documents import DocumentStore
from bqls.core.events import EventBroker
from bqls.core.remote_directory import RemoteDirectory
from bqls.core.schema_fetcher import SchemaFetcher
from bqls.core.tokenizer import SqlglotTokenizer, Tokenizer
from bqls.smart_logger import SmartLogger


class Services:
    """Everything one server process owns; built in the lifespan, closed on shutdown."""

    def __init__(
        self,
        cache: CacheStore,
        directory: RemoteDirectory,
        tokenizer: Tokenizer,
        events: Optional[EventBroker] = None,
        documents: Optional[DocumentStore] = None,
    ):
        self.cache = cache
        self.directory = directory
        self.tokenizer = tokenizer
        self.events = events or EventBroker()
        self.documents = documents or DocumentStore()
        self.fetcher = SchemaFetcher(cache, directory)
        self.engine = DiagnosticEngine(directory, tokenizer, publisher=self.events)
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls) -> "Services":
        return cls(
            cache=CacheStore(),
            directory=create_remote_directory(settings.remote_backend),
            tokenizer=SqlglotTokenizer(),
        )

    async def start(self) -> None:
        await self.cache.initialize()

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        """Run a fire-and-forget job, keeping a reference until it finishes."""
        task = asyncio.create_task(self._guarded(coro, name), name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @staticmethod
    async def _guarded(coro: Coroutine, name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            SmartLogger.log(
                "ERROR",
                "services.background.error",
                category="services",
                params={"job": name, "exception": repr(exc), "traceback": traceback.format_exc()},
                max_inline_chars=0,
            )

    async def close(self) -> None:
        """Finish background jobs, then release the remote client and flush the cache."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        try:
            await self.directory.close()
        finally:
            await self.cache.close()


def get_services(request: Request) -> Services:
    """FastAPI dependency for the process-wide services"""
    return request.app.state.services
