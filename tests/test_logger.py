import asyncio
import csv
import logging

import pytest

from arbgate.logger import AsyncAuditLogger, setup_console_logger


@pytest.mark.asyncio
async def test_audit_logger_writes_header_once(tmp_path):
    path = tmp_path / "nested" / "audit.csv"

    audit = AsyncAuditLogger(str(path), header=["time", "value"])
    await audit.start()
    assert audit.running
    audit.log_row(["t1", 1])
    audit.log_row(["t2", 2])
    await audit.stop()
    assert not audit.running

    # Reopening an existing file appends without a second header
    audit = AsyncAuditLogger(str(path), header=["time", "value"])
    await audit.start()
    audit.log_row(["t3", 3])
    await audit.stop()

    with open(path, newline="") as f:
        rows = list(csv.reader(f))
    assert rows == [["time", "value"], ["t1", "1"], ["t2", "2"], ["t3", "3"]]


@pytest.mark.asyncio
async def test_stop_before_start_is_noop(tmp_path):
    audit = AsyncAuditLogger(str(tmp_path / "a.csv"))
    await audit.stop()
    assert not audit.running


def test_console_logger_is_configured_once():
    logger = setup_console_logger("arbgate.test_console", "DEBUG")
    again = setup_console_logger("arbgate.test_console", "INFO")

    assert logger is again
    assert len(logger.handlers) == 1
    assert logger.level == logging.INFO


@pytest.mark.asyncio
async def test_rows_from_worker_threads_are_written(tmp_path):
    path = tmp_path / "threaded.csv"
    audit = AsyncAuditLogger(str(path))
    await audit.start()

    def worker(n):
        audit.log_row([f"t{n}", n])

    await asyncio.gather(*(asyncio.to_thread(worker, n) for n in range(5)))
    await audit.stop()

    with open(path, newline="") as f:
        rows = list(csv.reader(f))
    assert sorted(rows) == [[f"t{n}", str(n)] for n in range(5)]
