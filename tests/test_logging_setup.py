from __future__ import annotations

import io
import logging

import pytest

from ledger_pipeline.logging_setup import (
    PACKAGE_LOGGER,
    configure_logging,
    get_logger,
    reset_logging,
    resolve_level,
)


@pytest.fixture(autouse=True)
def _restore_package_logger():
    yield
    reset_logging()


def test_configure_logging_installs_a_single_handler():
    stream = io.StringIO()
    handler = configure_logging("debug", fmt="%(name)s %(levelname)s %(message)s", stream=stream)
    assert configure_logging("error") is handler

    get_logger("ledger_pipeline.pending").debug("Queued pending transaction %s", 7)

    assert stream.getvalue() == "ledger_pipeline.pending DEBUG Queued pending transaction 7\n"
    package = logging.getLogger(PACKAGE_LOGGER)
    assert package.handlers == [handler]
    assert package.propagate is False


def test_reset_allows_reconfiguring():
    first = configure_logging("info", stream=io.StringIO())
    reset_logging()
    assert logging.getLogger(PACKAGE_LOGGER).propagate is True
    assert configure_logging("info", stream=io.StringIO()) is not first


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("WARNING", logging.WARNING),
        (" debug ", logging.DEBUG),
        ("15", 15),
        ("chatty", logging.INFO),
        (logging.ERROR, logging.ERROR),
    ],
)
def test_resolve_level(raw, expected: int):
    assert resolve_level(raw) == expected


def test_level_from_environment(monkeypatch: pytest.MonkeyPatch):
    assert resolve_level(None) == logging.INFO
    monkeypatch.setenv("LEDGER_LOG_LEVEL", "warning")
    assert resolve_level(None) == logging.WARNING
