"""Unit tests for structured logging."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

import pytest

from settlement_service.logging import (
    ROOT_LOGGER_NAME,
    DailyRotatingFileHandler,
    JSONFormatter,
    get_logger,
    setup_logging,
)


@pytest.fixture
def _restore_root_logger():
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.mark.unit
def test_correlation_ids_become_top_level_fields() -> None:
    """Settlement identifiers leave ``extra``; other context stays there."""
    record = logging.makeLogRecord(
        {
            "name": "settlement_service.services.escrow_ledger",
            "levelname": "INFO",
            "msg": "Escrow settled",
            "escrow_id": "esc-1",
            "task_id": "task-1",
            "contract_id": None,
            "amount": 500,
        }
    )

    data = json.loads(JSONFormatter("settlement").format(record))

    assert data["service"] == "settlement"
    assert data["message"] == "Escrow settled"
    assert data["escrow_id"] == "esc-1"
    assert data["task_id"] == "task-1"
    assert "contract_id" not in data
    assert data["extra"] == {"amount": 500, "contract_id": None}
    assert data["timestamp"].endswith("Z")


@pytest.mark.unit
def test_get_logger_nests_under_package_root() -> None:
    """Foreign names are nested; package module names are kept."""
    assert get_logger("worker").name == f"{ROOT_LOGGER_NAME}.worker"
    assert get_logger("settlement_service.services.store").name == (
        "settlement_service.services.store"
    )


@pytest.mark.unit
def test_rollover_keeps_only_retained_days(tmp_path) -> None:
    """Old files of the same prefix are deleted; other files are left alone."""
    for day in range(1, 6):
        (tmp_path / f"settlement-2025-01-0{day}.log").write_text("{}\n")
    (tmp_path / "other-2025-01-01.log").write_text("{}\n")

    handler = DailyRotatingFileHandler(str(tmp_path), prefix="settlement", retention_days=3)
    try:
        assert [path.name for path in handler.expired_files()] == [
            "settlement-2025-01-01.log",
            "settlement-2025-01-02.log",
            "settlement-2025-01-03.log",
        ]
        handler.doRollover()
    finally:
        handler.close()

    today = datetime.now(tz=UTC).strftime("%Y-%m-%d")
    assert sorted(path.name for path in tmp_path.iterdir()) == sorted(
        [
            "other-2025-01-01.log",
            "settlement-2025-01-04.log",
            "settlement-2025-01-05.log",
            f"settlement-{today}.log",
        ]
    )


@pytest.mark.unit
@pytest.mark.usefixtures("_restore_root_logger")
def test_setup_logging_writes_prefixed_json_file(tmp_path) -> None:
    """Records from module loggers reach the service's daily file as JSON."""
    setup_logging("INFO", "settlement", str(tmp_path), retention_days=7)

    get_logger("settlement_service.services.escrow_ledger").info(
        "Escrow frozen", extra={"task_id": "task-9", "amount": 10}
    )
    get_logger("worker").debug("not written")
    for handler in logging.getLogger(ROOT_LOGGER_NAME).handlers:
        handler.flush()

    today = datetime.now(tz=UTC).strftime("%Y-%m-%d")
    lines = (tmp_path / f"settlement-{today}.log").read_text().splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["task_id"] == "task-9"
    assert entry["extra"] == {"amount": 10}
    assert entry["level"] == "INFO"


@pytest.mark.unit
def test_setup_logging_rejects_unknown_level(tmp_path) -> None:
    """An unknown level name is a configuration error."""
    with pytest.raises(ValueError, match="Invalid log level"):
        setup_logging("LOUD", "settlement", str(tmp_path))
