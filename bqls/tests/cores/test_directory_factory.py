# python -m pytest bqls/tests/cores/test_directory_factory.py -v

import pytest

from bqls.core.bigquery_directory import BigQueryDirectory
from bqls.core.cli_directory import BigQueryCliDirectory
from bqls.core.directory_factory import create_remote_directory


@pytest.mark.parametrize(
    "backend, expected",
    [
        ("api", BigQueryDirectory),
        ("cli", BigQueryCliDirectory),
        ("bq", BigQueryCliDirectory),
        ("  CLI ", BigQueryCliDirectory),
    ],
)
def test_create_remote_directory(backend, expected) -> None:
    assert isinstance(create_remote_directory(backend), expected)


def test_each_call_returns_a_fresh_instance() -> None:
    assert create_remote_directory("cli") is not create_remote_directory("cli")


def test_unknown_backend_lists_supported() -> None:
    with pytest.raises(NotImplementedError) as excinfo:
        create_remote_directory("odbc")
    assert "api" in str(excinfo.value)
    assert "cli" in str(excinfo.value)
