"""SQL tokenization with source positions"""
import bisect
from dataclasses import dataclass
from typing import List, Protocol

from sqlglot.dialects.dialect import Dialect
from sqlglot.errors import TokenError

from bqls.smart_logger import SmartLogger


@dataclass(frozen=True)
class Token:
    """A lexical unit; line and column are 1-based, literal is the raw source text."""
    line: int
    column: int
    literal: str


class Tokenizer(Protocol):
    def tokenize(self, text: str) -> List[Token]: ...


def line_start_offsets(text: str) -> List[int]:
    starts = [0]
    index = text.find("\n")
    while index != -1:
        starts.append(index + 1)
        index = text.find("\n", index + 1)
    return starts


class SqlglotTokenizer:
    """Tokenizer backed by sqlglot's BigQuery dialect"""

    def __init__(self, dialect: str = "bigquery"):
        self.dialect = Dialect.get_or_raise(dialect)

    def tokenize(self, text: str) -> List[Token]:
        """
        Tokenize ``text``. Returns an empty list when the text cannot be tokenized
        (e.g. an unterminated string), so callers fall back to whole-document ranges.
        """
        try:
            raw_tokens = self.dialect.tokenize(text)
        except (TokenError, ValueError) as e:
            SmartLogger.log(
                "DEBUG",
                "tokenizer.failed",
                category="tokenizer",
                params={"error": str(e)},
            )
            return []

        starts = line_start_offsets(text)
        tokens = []
        for raw in sorted(raw_tokens, key=lambda t: t.start):
            # sqlglot strips quotes from string/identifier text; the source slice keeps them
            literal = text[raw.start:raw.end + 1]
            if not literal:
                continue
            line_index = bisect.bisect_right(starts, raw.start) - 1
            tokens.append(
                Token(
                    line=line_index + 1,
                    column=raw.start - starts[line_index] + 1,
                    literal=literal,
                )
            )
        return tokens
