"""Editor-protocol shaped diagnostics (0-based line/character positions)."""
from enum import IntEnum
from typing import List, Optional

from pydantic import BaseModel, Field


class DiagnosticSeverity(IntEnum):
    ERROR = 1
    WARNING = 2
    INFORMATION = 3
    HINT = 4


class Position(BaseModel):
    line: int = Field(..., ge=0)
    character: int = Field(..., ge=0)


class Range(BaseModel):
    start: Position
    end: Position


class Diagnostic(BaseModel):
    range: Range
    severity: DiagnosticSeverity = DiagnosticSeverity.ERROR
    message: str


class ValidationReport(BaseModel):
    """Outcome of one dry-run validation."""
    cost_label: str
    diagnostics: List[Diagnostic] = []
    request_id: Optional[int] = None
