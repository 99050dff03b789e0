"""Tests for JSON log formatter."""

import json
import logging
import sys

import pytest

from libs.common.logging.formatter import JSONFormatter


@pytest.fixture()
def formatter() -> JSONFormatter:
    return JSONFormatter(service_name="backtest_worker")


def _record(msg: str = "Test message", args: tuple = (), **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="/app/libs/backtest/stages.py",
        lineno=42,
        msg=msg,
        args=args,
        exc_info=None,
        func="run",
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test suite for JSONFormatter."""

    def test_basic_log_format(self, formatter: JSONFormatter) -> None:
        entry = json.loads(formatter.format(_record(pipeline_id="pipe-1", stage="load")))

        assert entry["level"] == "INFO"
        assert entry["service"] == "backtest_worker"
        assert entry["pipeline_id"] == "pipe-1"
        assert entry["stage"] == "load"
        assert entry["message"] == "Test message"
        assert "context" not in entry

    def test_timestamp_format(self, formatter: JSONFormatter) -> None:
        assert formatter._format_timestamp(1697884200.0) == "2023-10-21T10:30:00.000Z"

    def test_missing_pipeline_fields(self, formatter: JSONFormatter) -> None:
        entry = json.loads(formatter.format(_record()))
        assert entry["pipeline_id"] is None
        assert entry["stage"] is None

    def test_context_dict_preferred(self, formatter: JSONFormatter) -> None:
        record = _record(context={"rows": 10}, dataset_id="ds-1")
        entry = json.loads(formatter.format(record))
        assert entry["context"] == {"rows": 10}

    def test_extra_fields_as_context(self, formatter: JSONFormatter) -> None:
        record = _record(dataset_id="ds-1", record_count=8760)
        entry = json.loads(formatter.format(record))
        assert entry["context"] == {"dataset_id": "ds-1", "record_count": 8760}

    def test_no_context_when_disabled(self) -> None:
        formatter = JSONFormatter(service_name="backtest_worker", include_context=False)
        entry = json.loads(formatter.format(_record(dataset_id="ds-1")))
        assert "context" not in entry

    def test_message_with_args(self, formatter: JSONFormatter) -> None:
        entry = json.loads(formatter.format(_record("Loaded %d rows from %s", (5, "btc.csv"))))
        assert entry["message"] == "Loaded 5 rows from btc.csv"

    def test_source_location(self, formatter: JSONFormatter) -> None:
        entry = json.loads(formatter.format(_record()))
        assert entry["source"] == {
            "file": "/app/libs/backtest/stages.py",
            "line": 42,
            "function": "run",
        }

    def test_exception_logging(self, formatter: JSONFormatter) -> None:
        try:
            raise ValueError("bad candle")
        except ValueError:
            record = _record()
            record.exc_info = sys.exc_info()

        entry = json.loads(formatter.format(record))

        assert entry["exception"]["type"] == "ValueError"
        assert entry["exception"]["message"] == "bad candle"
        assert "Traceback" in entry["exception"]["traceback"]

    def test_non_serializable_values_use_str(self, formatter: JSONFormatter) -> None:
        entry = json.loads(formatter.format(_record(context={"path": object})))
        assert entry["context"]["path"].startswith("<class")
