# python -m pytest bqls/tests/cores/test_diagnostic_engine.py -v

import asyncio
from typing import List, Optional

import pytest

from bqls.core import diagnostic_engine
from bqls.core.diagnostic_engine import (
    ERROR_COST_LABEL,
    UNKNOWN_COST_LABEL,
    DiagnosticEngine,
    RegexErrorLocator,
    format_bytes,
    offset_of,
    select_token,
    token_range,
    whole_document_range,
)
from bqls.core.errors import DryRunValidationError, LocationUnresolvable, RemoteUnavailable
from bqls.core.remote_directory import DryRunResult, RemoteDirectory
from bqls.core.tokenizer import SqlglotTokenizer, Token
from bqls.models.diagnostics import DiagnosticSeverity, Position


class DummyDirectory(RemoteDirectory):
    """Dry run that rejects a doubled semicolon the way BigQuery does."""

    def __init__(self, processed_bytes: Optional[int] = 0, error: Optional[Exception] = None):
        self.processed_bytes = processed_bytes
        self.error = error
        self.gate: Optional[asyncio.Event] = None

    async def list_projects(self):
        return []

    async def list_datasets(self, project):
        return []

    async def list_columns(self, dataset):
        return []

    async def dry_run(self, text: str) -> DryRunResult:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if ";;" in text:
            column = text.index(";;") + 2
            raise DryRunValidationError(f'Syntax error: Unexpected ";" at [1:{column}]')
        return DryRunResult(processed_bytes=self.processed_bytes)


class DummyTokenizer:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens

    def tokenize(self, text: str) -> List[Token]:
        return list(self.tokens)


class RecordingPublisher:
    def __init__(self):
        self.diagnostics = []
        self.labels = []

    def publish_diagnostics(self, uri, diagnostics):
        self.diagnostics.append((uri, diagnostics))

    def notify_total_bytes_processed(self, label):
        self.labels.append(label)


class TestFormatBytes:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (0, "0B"),
            (1023, "1023B"),
            (1024, "1.0KB"),
            (1536, "1.5KB"),
            (1024 ** 2 * 3, "3.0MB"),
            (1024 ** 3, "1.0GB"),
            (1024 ** 4 * 2, "2.0TB"),
        ],
    )
    def test_format_bytes(self, value, expected):
        assert format_bytes(value) == expected


class TestPositionMapping:
    """[row:col] to token range"""

    TEXT = "SELECT a, b FROM t"
    TOKENS = [
        Token(1, 1, "SELECT"),
        Token(1, 8, "a"),
        Token(1, 9, ","),
        Token(1, 11, "b"),
        Token(1, 13, "FROM"),
        Token(1, 18, "t"),
    ]

    def test_locator_parses_row_and_column(self):
        assert RegexErrorLocator().locate("Unrecognized name: x at [3:14]") == (3, 14)
        assert RegexErrorLocator().locate("Table not found") is None
        assert RegexErrorLocator().locate("weird [0:3]") is None

    def test_offset_of_counts_previous_lines(self):
        assert offset_of("ab\ncd", 1, 1) == 0
        assert offset_of("ab\ncd", 2, 2) == 4

    def test_offset_at_token_start_selects_that_token(self):
        offset = offset_of(self.TEXT, 1, 13)
        assert select_token(self.TEXT, self.TOKENS, offset).literal == "FROM"

    def test_offset_one_before_token_selects_previous_token(self):
        offset = offset_of(self.TEXT, 1, 12)
        assert select_token(self.TEXT, self.TOKENS, offset).literal == "b"

    def test_offset_before_first_token_selects_first_token(self):
        text = "   SELECT 1"
        tokens = [Token(1, 4, "SELECT"), Token(1, 11, "1")]
        assert select_token(text, tokens, 0).literal == "SELECT"

    def test_offset_past_end_selects_last_token(self):
        offset = offset_of(self.TEXT, 1, 40)
        assert select_token(self.TEXT, self.TOKENS, offset).literal == "t"

    def test_offset_of_past_last_line(self):
        assert offset_of("ab\ncd", 3, 1) == 6
        assert offset_of("ab\ncd", 9, 2) == 7

    def test_large_document_splits_lines_once(self, monkeypatch):
        """line offsets are computed once per lookup, not once per token"""
        calls = []
        original = diagnostic_engine.line_start_offsets

        def counting(text):
            calls.append(len(text))
            return original(text)

        monkeypatch.setattr(diagnostic_engine, "line_start_offsets", counting)

        line = "SELECT a, b FROM t;"
        text = "\n".join([line] * 2000)
        tokens = []
        for row in range(1, 2001):
            tokens.extend([Token(row, 1, "SELECT"), Token(row, 8, "a"), Token(row, 9, ","), Token(row, 18, "t")])
        starts = original(text)

        selected = select_token(text, tokens, offset_of(text, 1500, 10, starts))

        assert selected == Token(1500, 9, ",")
        assert len(calls) == 1

    def test_no_tokens_is_unresolvable(self):
        with pytest.raises(LocationUnresolvable):
            select_token(self.TEXT, [], 0)

    def test_single_line_token_range(self):
        rng = token_range(Token(2, 5, "FROM"))
        assert rng.start == Position(line=1, character=4)
        assert rng.end == Position(line=1, character=8)

    def test_multiline_literal_range_ends_on_last_line(self):
        rng = token_range(Token(1, 8, "'''ab\ncd\nxyz'''"))
        assert rng.start == Position(line=0, character=7)
        assert rng.end == Position(line=2, character=6)

    def test_whole_document_range(self):
        rng = whole_document_range("SELECT 1\nFROM t\n")
        assert rng.start == Position(line=0, character=0)
        assert rng.end == Position(line=2, character=0)


class TestDiagnosticEngineValidate:
    @pytest.mark.asyncio
    async def test_valid_query_has_no_diagnostics(self):
        engine = DiagnosticEngine(DummyDirectory(processed_bytes=1536), SqlglotTokenizer())
        report = await engine.validate("SELECT 1;")
        assert report.diagnostics == []
        assert report.cost_label == "1.5KB"

    @pytest.mark.asyncio
    async def test_doubled_semicolon_yields_one_diagnostic_on_second_semicolon(self):
        engine = DiagnosticEngine(DummyDirectory(), SqlglotTokenizer())
        report = await engine.validate("SELECT 1;;")

        assert report.cost_label == ERROR_COST_LABEL
        assert len(report.diagnostics) == 1
        diagnostic = report.diagnostics[0]
        assert diagnostic.severity == DiagnosticSeverity.ERROR
        assert diagnostic.message == 'Syntax error: Unexpected ";" at [1:10]'
        assert diagnostic.range.start == Position(line=0, character=9)
        assert diagnostic.range.end == Position(line=0, character=10)

    @pytest.mark.asyncio
    async def test_unknown_processed_bytes(self):
        engine = DiagnosticEngine(DummyDirectory(processed_bytes=None), SqlglotTokenizer())
        report = await engine.validate("SELECT 1")
        assert report.cost_label == UNKNOWN_COST_LABEL

    @pytest.mark.asyncio
    async def test_message_without_location_covers_whole_document(self):
        directory = DummyDirectory(error=DryRunValidationError("Access Denied: Project p"))
        engine = DiagnosticEngine(directory, SqlglotTokenizer())
        report = await engine.validate("SELECT 1\nFROM t")

        assert len(report.diagnostics) == 1
        rng = report.diagnostics[0].range
        assert rng.start == Position(line=0, character=0)
        assert rng.end == Position(line=1, character=6)

    @pytest.mark.asyncio
    async def test_no_tokens_falls_back_to_whole_document(self):
        directory = DummyDirectory(error=DryRunValidationError("Syntax error at [1:3]"))
        engine = DiagnosticEngine(directory, DummyTokenizer([]))
        report = await engine.validate("abc")
        assert report.diagnostics[0].range == whole_document_range("abc")

    @pytest.mark.asyncio
    async def test_remote_unavailable_becomes_diagnostic(self):
        directory = DummyDirectory(error=RemoteUnavailable("bq query --dry_run timed out after 60 seconds"))
        engine = DiagnosticEngine(directory, SqlglotTokenizer())
        report = await engine.validate("SELECT 1")
        assert report.cost_label == ERROR_COST_LABEL
        assert "timed out" in report.diagnostics[0].message

    @pytest.mark.asyncio
    async def test_multiline_error_position(self):
        text = "SELECT a\nFROM t\nWHERE"
        tokens = [
            Token(1, 1, "SELECT"),
            Token(1, 8, "a"),
            Token(2, 1, "FROM"),
            Token(2, 6, "t"),
            Token(3, 1, "WHERE"),
        ]
        directory = DummyDirectory(error=DryRunValidationError("Syntax error: Unexpected end of script at [3:6]"))
        engine = DiagnosticEngine(directory, DummyTokenizer(tokens))
        report = await engine.validate(text)
        rng = report.diagnostics[0].range
        assert rng.start == Position(line=2, character=0)
        assert rng.end == Position(line=2, character=5)


class TestDiagnosticEngineRun:
    @pytest.mark.asyncio
    async def test_run_publishes_diagnostics_and_cost(self):
        publisher = RecordingPublisher()
        engine = DiagnosticEngine(DummyDirectory(processed_bytes=1024 ** 3), SqlglotTokenizer(), publisher)

        report = await engine.run("file:///a.sql", "SELECT 1")

        assert report is not None and report.request_id == 1
        assert publisher.diagnostics == [("file:///a.sql", [])]
        assert publisher.labels == ["1.0GB"]

    @pytest.mark.asyncio
    async def test_superseded_run_returns_none_and_publishes_nothing(self):
        directory = DummyDirectory(processed_bytes=1)
        directory.gate = asyncio.Event()
        publisher = RecordingPublisher()
        engine = DiagnosticEngine(directory, SqlglotTokenizer(), publisher)

        older = asyncio.create_task(engine.run("file:///a.sql", "SELECT 1;;"))
        await asyncio.sleep(0)
        newer = asyncio.create_task(engine.run("file:///a.sql", "SELECT 1;"))
        await asyncio.sleep(0)
        directory.gate.set()

        older_report, newer_report = await asyncio.gather(older, newer)

        assert older_report is None
        assert newer_report is not None and newer_report.diagnostics == []
        assert publisher.diagnostics == [("file:///a.sql", [])]
        assert publisher.labels == ["1B"]

    @pytest.mark.asyncio
    async def test_runs_for_different_documents_do_not_supersede(self):
        publisher = RecordingPublisher()
        engine = DiagnosticEngine(DummyDirectory(), SqlglotTokenizer(), publisher)

        reports = await asyncio.gather(engine.run("file:///a.sql", "SELECT 1"), engine.run("file:///b.sql", "SELECT 2"))

        assert all(r is not None for r in reports)
        assert sorted(uri for uri, _ in publisher.diagnostics) == ["file:///a.sql", "file:///b.sql"]

    @pytest.mark.asyncio
    async def test_forget_makes_in_flight_run_stale(self):
        directory = DummyDirectory()
        directory.gate = asyncio.Event()
        publisher = RecordingPublisher()
        engine = DiagnosticEngine(directory, SqlglotTokenizer(), publisher)

        pending = asyncio.create_task(engine.run("file:///a.sql", "SELECT 1"))
        await asyncio.sleep(0)
        engine.forget("file:///a.sql")
        directory.gate.set()

        assert await pending is None
        assert publisher.diagnostics == []
