# python -m pytest bqls/tests/routers/test_http_api.py -v

from typing import List

import pytest
from fastapi.testclient import TestClient

from bqls.config import settings
from bqls.core.cache_store import CacheStore, store_path_for
from bqls.core.errors import DryRunValidationError
from bqls.core.remote_directory import DryRunResult, RemoteDirectory
from bqls.core.tokenizer import SqlglotTokenizer
from bqls.deps import Services
from bqls.main import app
from bqls.models.schema import Column, Dataset, Project, Table


class DummyDirectory(RemoteDirectory):
    def __init__(self):
        self.column_calls: List[str] = []
        self.closed = False

    async def list_projects(self) -> List[Project]:
        return [Project("p")]

    async def list_datasets(self, project: str) -> List[Dataset]:
        return [Dataset(project, "sales", "EU"), Dataset(project, "logs", "US")]

    async def list_columns(self, dataset: Dataset) -> List[Table]:
        self.column_calls.append(dataset.id)
        return [
            Table(dataset.project, dataset.id, "orders_20240101", [Column("id", "INT64")]),
            Table(dataset.project, dataset.id, "orders_20240102", [Column("id", "INT64"), Column("amount", "NUMERIC")]),
        ]

    async def dry_run(self, text: str) -> DryRunResult:
        if ";;" in text:
            raise DryRunValidationError(f'Syntax error: Unexpected ";" at [1:{text.index(";;") + 2}]')
        return DryRunResult(processed_bytes=2048)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def services(tmp_path, monkeypatch):
    svc = Services(
        cache=CacheStore(store_path_for(str(tmp_path))),
        directory=DummyDirectory(),
        tokenizer=SqlglotTokenizer(),
    )
    monkeypatch.setattr(Services, "from_settings", staticmethod(lambda: svc))
    monkeypatch.setattr(settings, "dry_run_on_save", False)
    monkeypatch.setattr(settings, "refresh_on_open", False)
    return svc


@pytest.fixture
def client(services):
    with TestClient(app) as c:
        yield c


class TestCommands:
    def test_update_cache_uses_open_documents(self, client, services):
        client.post("/bqls/documents/open", json={"uri": "file:///q.sql", "text": "SELECT * FROM p.sales.orders_*"})

        resp = client.post("/bqls/commands/update-cache")

        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["column_scopes_refreshed"] == 1
        assert body["column_scopes_skipped"] == 1
        assert services.directory.column_calls == ["sales"]

    def test_update_cache_with_explicit_texts(self, client, services):
        resp = client.post("/bqls/commands/update-cache", json={"texts": ["FROM logs.x"]})
        assert resp.json()["column_scopes_refreshed"] == 1
        assert services.directory.column_calls == ["logs"]

    def test_clear_cache(self, client):
        client.post("/bqls/commands/update-cache", json={"texts": []})
        assert client.get("/bqls/cache/projects").json() == [{"id": "p"}]

        resp = client.post("/bqls/commands/clear-cache")

        assert resp.json()["status"] == "success"
        assert client.get("/bqls/cache/projects").json() == []

    def test_dry_run_reports_error_range(self, client):
        resp = client.post("/bqls/commands/dry-run", json={"uri": "file:///q.sql", "text": "SELECT 1;;"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "success"
        assert body["cost_label"] == "ERROR"
        assert len(body["diagnostics"]) == 1
        assert body["diagnostics"][0]["range"]["start"] == {"line": 0, "character": 9}

    def test_dry_run_uses_open_document_text(self, client):
        client.post("/bqls/documents/open", json={"uri": "file:///q.sql", "text": "SELECT 1;"})
        body = client.post("/bqls/commands/dry-run", json={"uri": "file:///q.sql"}).json()
        assert body["cost_label"] == "2.0KB"
        assert body["diagnostics"] == []

    def test_dry_run_unknown_document_is_404(self, client):
        resp = client.post("/bqls/commands/dry-run", json={"uri": "file:///missing.sql"})
        assert resp.status_code == 404


class TestDocuments:
    def test_change_unknown_document_is_404(self, client):
        resp = client.post("/bqls/documents/change", json={"uri": "file:///x.sql", "text": "SELECT 1"})
        assert resp.status_code == 404

    def test_save_schedules_dry_run_when_enabled(self, services, monkeypatch):
        monkeypatch.setattr(settings, "dry_run_on_save", True)
        with TestClient(app) as client:
            client.post("/bqls/documents/open", json={"uri": "file:///q.sql", "text": "SELECT 1"})
            resp = client.post("/bqls/documents/save", json={"uri": "file:///q.sql", "text": "SELECT 1;;"})
            assert resp.json()["dry_run_scheduled"] is True

        # shutdown waits for background jobs
        diagnostics = services.events.latest_diagnostics["file:///q.sql"]
        assert len(diagnostics) == 1
        assert services.events.latest_cost_label == "ERROR"

    def test_save_without_dry_run(self, client):
        client.post("/bqls/documents/open", json={"uri": "file:///q.sql", "text": "SELECT 1"})
        resp = client.post("/bqls/documents/save", json={"uri": "file:///q.sql"})
        assert resp.json()["dry_run_scheduled"] is False

    def test_close_clears_published_diagnostics(self, client, services):
        client.post("/bqls/commands/dry-run", json={"uri": "file:///q.sql", "text": "SELECT 1;;"})
        assert len(client.get("/bqls/documents/diagnostics", params={"uri": "file:///q.sql"}).json()) == 1

        client.post("/bqls/documents/close", json={"uri": "file:///q.sql"})

        assert client.get("/bqls/documents/diagnostics", params={"uri": "file:///q.sql"}).json() == []
        assert "file:///q.sql" not in services.documents


class TestCacheReads:
    def test_hierarchy_reads(self, client):
        client.post("/bqls/commands/update-cache", json={"texts": ["sales"]})

        assert client.get("/bqls/cache/projects/p/datasets").json() == [
            {"project": "p", "id": "logs", "location": "US"},
            {"project": "p", "id": "sales", "location": "EU"},
        ]
        tables = client.get("/bqls/cache/projects/p/datasets/sales/tables").json()
        assert [t["id"] for t in tables] == ["orders_*"]
        columns = client.get("/bqls/cache/projects/p/datasets/sales/tables/orders_*/columns").json()
        assert columns == [
            {"name": "id", "data_type": "INT64"},
            {"name": "amount", "data_type": "NUMERIC"},
        ]

    def test_unknown_scope_is_empty(self, client):
        assert client.get("/bqls/cache/projects/nope/datasets").json() == []


class TestAppLifecycle:
    def test_health_and_shutdown(self, services):
        with TestClient(app) as client:
            body = client.get("/health").json()
            assert body["status"] == "healthy"
            assert body["config"]["remote_backend"] == settings.remote_backend

        assert services.directory.closed is True
        assert not services.cache.is_open

    def test_latest_events_snapshot(self, client):
        client.post("/bqls/commands/dry-run", json={"uri": "file:///q.sql", "text": "SELECT 1"})
        body = client.get("/bqls/events/latest").json()
        assert body["totalBytesProcessed"] == "2.0KB"
        assert body["diagnostics"] == {"file:///q.sql": []}
