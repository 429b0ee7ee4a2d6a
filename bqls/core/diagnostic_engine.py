"""
Dry-run diagnostics

Runs a document through the warehouse dry run and turns the result into
editor diagnostics plus a bytes-processed label. Error messages such as
``Syntax error: Unexpected ";" at [1:10]`` are mapped onto the token that
starts at or before the reported position.
"""

from __future__ import annotations

import bisect
import itertools
import re
import traceback
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from bqls.core.errors import DryRunValidationError, LocationUnresolvable, RemoteDirectoryError
from bqls.core.remote_directory import RemoteDirectory
from bqls.core.tokenizer import Token, Tokenizer, line_start_offsets
from bqls.models.diagnostics import (
    Diagnostic,
    DiagnosticSeverity,
    Position,
    Range,
    ValidationReport,
)
from bqls.smart_logger import SmartLogger

ERROR_COST_LABEL = "ERROR"
UNKNOWN_COST_LABEL = "???B"

_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


def format_bytes(num_bytes: int) -> str:
    """
    >>> format_bytes(1023)
    '1023B'
    >>> format_bytes(1536)
    '1.5KB'
    """
    if num_bytes < 1024:
        return f"{int(num_bytes)}B"
    value = float(num_bytes)
    unit_index = 0
    while value >= 1024 and unit_index < len(_BYTE_UNITS) - 1:
        value /= 1024
        unit_index += 1
    return f"{value:.1f}{_BYTE_UNITS[unit_index]}"


# ---------- error location ----------

class ErrorLocator(Protocol):
    def locate(self, message: str) -> Optional[Tuple[int, int]]:
        """Return the 1-based (row, column) an error message points at, if any."""
        ...


class RegexErrorLocator:
    """Finds the ``[row:col]`` marker BigQuery appends to syntax and semantic errors."""

    pattern = re.compile(r"\[([0-9]+):([0-9]+)\]")

    def locate(self, message: str) -> Optional[Tuple[int, int]]:
        match = self.pattern.search(message or "")
        if not match:
            return None
        row, column = int(match.group(1)), int(match.group(2))
        if row < 1 or column < 1:
            return None
        return row, column


def offset_of(text: str, line: int, column: int, starts: Optional[List[int]] = None) -> int:
    """
    Character offset of a 1-based (line, column) inside ``text``.

    ``starts`` are the precomputed line start offsets of ``text``; pass them when
    resolving many positions in the same text.
    """
    if starts is None:
        starts = line_start_offsets(text)
    line_index = max(line, 1) - 1
    # a row past the last line counts every line, newline included
    line_start = starts[line_index] if line_index < len(starts) else len(text) + 1
    return line_start + (column - 1)


def select_token(text: str, tokens: Sequence[Token], offset: int) -> Token:
    """
    The last token starting at or before ``offset``.

    An offset that lands exactly on a token's first character selects that token;
    an offset before the first token selects the first token.
    """
    if not tokens:
        raise LocationUnresolvable("No tokens to align the error position with")
    starts = line_start_offsets(text)
    ordered = sorted(
        ((offset_of(text, t.line, t.column, starts), t) for t in tokens),
        key=lambda pair: pair[0],
    )
    index = bisect.bisect_right([token_offset for token_offset, _ in ordered], offset) - 1
    return ordered[max(index, 0)][1]


def token_range(token: Token) -> Range:
    fragments = token.literal.split("\n")
    start = Position(line=token.line - 1, character=token.column - 1)
    if len(fragments) == 1:
        end = Position(line=start.line, character=start.character + len(token.literal))
    else:
        end = Position(line=start.line + len(fragments) - 1, character=len(fragments[-1]))
    return Range(start=start, end=end)


def whole_document_range(text: str) -> Range:
    lines = text.split("\n")
    return Range(
        start=Position(line=0, character=0),
        end=Position(line=len(lines) - 1, character=len(lines[-1])),
    )


def error_range(text: str, message: str, tokens: Sequence[Token], locator: ErrorLocator) -> Range:
    """
    Raises:
        LocationUnresolvable: the message has no position, or there is no token to anchor it.
    """
    location = locator.locate(message)
    if location is None:
        raise LocationUnresolvable(f"No [row:col] marker in: {message[:200]}")
    row, column = location
    return token_range(select_token(text, tokens, offset_of(text, row, column)))


# ---------- engine ----------

class DiagnosticsPublisher(Protocol):
    def publish_diagnostics(self, uri: str, diagnostics: List[Diagnostic]) -> None: ...

    def notify_total_bytes_processed(self, label: str) -> None: ...


class DiagnosticEngine:
    """Validate documents through the remote dry run and publish the outcome."""

    def __init__(
        self,
        directory: RemoteDirectory,
        tokenizer: Tokenizer,
        publisher: Optional[DiagnosticsPublisher] = None,
        locator: Optional[ErrorLocator] = None,
    ):
        self.directory = directory
        self.tokenizer = tokenizer
        self.publisher = publisher
        self.locator = locator or RegexErrorLocator()
        self._request_ids = itertools.count(1)
        self._latest_request: Dict[str, int] = {}

    async def validate(self, text: str) -> ValidationReport:
        """Dry-run ``text``. Never raises for remote or tokenizer failures."""
        try:
            result = await self.directory.dry_run(text)
        except DryRunValidationError as e:
            return self._error_report(text, e.message)
        except RemoteDirectoryError as e:
            SmartLogger.log(
                "WARNING",
                "diagnostic_engine.dry_run.unavailable",
                category="diagnostic_engine",
                params={"error": str(e)},
            )
            return self._error_report(text, str(e))
        except Exception as e:
            SmartLogger.log(
                "ERROR",
                "diagnostic_engine.dry_run.unexpected_error",
                category="diagnostic_engine",
                params={"error": repr(e), "traceback": traceback.format_exc()},
                max_inline_chars=0,
            )
            return self._error_report(text, str(e) or type(e).__name__)

        if result.processed_bytes is None:
            label = UNKNOWN_COST_LABEL
        else:
            label = format_bytes(result.processed_bytes)
        return ValidationReport(cost_label=label, diagnostics=[])

    def _error_report(self, text: str, message: str) -> ValidationReport:
        try:
            diagnostic_range = error_range(text, message, self.tokenizer.tokenize(text), self.locator)
        except LocationUnresolvable:
            diagnostic_range = whole_document_range(text)
        diagnostic = Diagnostic(range=diagnostic_range, severity=DiagnosticSeverity.ERROR, message=message)
        return ValidationReport(cost_label=ERROR_COST_LABEL, diagnostics=[diagnostic])

    async def run(self, uri: str, text: str) -> Optional[ValidationReport]:
        """
        Validate one document version and publish the result.

        Returns None, publishing nothing, when a newer run for the same uri was
        started while this one was waiting on the dry run.
        """
        request_id = next(self._request_ids)
        self._latest_request[uri] = request_id

        report = await self.validate(text)
        report.request_id = request_id

        if self._latest_request.get(uri) != request_id:
            SmartLogger.log(
                "DEBUG",
                "diagnostic_engine.run.superseded",
                category="diagnostic_engine",
                params={"uri": uri, "request_id": request_id, "latest": self._latest_request.get(uri)},
            )
            return None

        if self.publisher is not None:
            # an empty list clears the previously published diagnostics
            self.publisher.publish_diagnostics(uri, report.diagnostics)
            self.publisher.notify_total_bytes_processed(report.cost_label)
        SmartLogger.log(
            "INFO",
            "diagnostic_engine.run.completed",
            category="diagnostic_engine",
            params={"uri": uri, "cost": report.cost_label, "diagnostics": len(report.diagnostics)},
        )
        return report

    def forget(self, uri: str) -> None:
        """Drop request bookkeeping for a closed document; in-flight runs for it become stale."""
        self._latest_request.pop(uri, None)
