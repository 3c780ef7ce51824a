import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from propagent.utils import (
    StructuredFormatter,
    days_between,
    format_money,
    generate_ulid,
    round_half_up,
    setup_logging,
    truncate,
)


def test_generate_ulid_shape():
    first, second = generate_ulid(), generate_ulid()
    assert len(first) == 26
    assert first != second
    assert set(first) <= set("0123456789ABCDEFGHJKMNPQRSTVWXYZ")


@pytest.mark.parametrize("value,expected", [(2.5, 3), (2.4, 2), (-2.5, -2), (-2.6, -3), (0, 0)])
def test_round_half_up(value, expected):
    assert round_half_up(value) == expected


def test_days_between():
    now = datetime(2026, 3, 2, tzinfo=timezone.utc)
    assert days_between(now + timedelta(days=2, hours=12), now) == 3
    assert days_between(now, now + timedelta(days=3)) == -3


@pytest.mark.parametrize("amount,expected", [(750, "750"), (750.0, "750"), (5000.01, "5000.01"), (12.5, "12.5")])
def test_format_money(amount, expected):
    assert format_money(amount) == expected


def test_truncate():
    assert truncate("abcdef", 3) == "abc"
    assert truncate("ab", 3) == "ab"


def test_structured_formatter_includes_extras():
    record = logging.LogRecord("propagent.ledger", logging.INFO, __file__, 1, "Run %s done", ("r1",), None)
    record.run_id = "r1"
    record.event = "run.completed"
    data = json.loads(StructuredFormatter().format(record))

    assert data["message"] == "Run r1 done"
    assert data["level"] == "INFO"
    assert data["run_id"] == "r1"
    assert data["event"] == "run.completed"
    assert "step" not in data


def test_setup_logging_writes_structured_file(tmp_path):
    log_file = tmp_path / "logs" / "propagent.log"
    logger = setup_logging(log_file=log_file, log_level="debug", log_format="structured", console_output=False)
    try:
        logging.getLogger("propagent.test").debug("hello", extra={"event": "test"})
        for handler in logger.handlers:
            handler.flush()
        line = json.loads(log_file.read_text().splitlines()[-1])
        assert line["message"] == "hello"
        assert line["event"] == "test"
    finally:
        for handler in logger.handlers:
            handler.close()
        logger.handlers = []
