import json
import logging

from app.core.logging import JSONFormatter


def _record(level, message, **data):
    record = logging.LogRecord("app.services.payment_service", level, __file__, 42, message, None, None)
    if data:
        record.extra_data = data
    return record


def test_entry_is_tagged_with_service_and_env():
    formatter = JSONFormatter(service="scheduler", env="test")

    entry = json.loads(formatter.format(_record(logging.INFO, "Sweep finished")))

    assert entry["service"] == "scheduler"
    assert entry["env"] == "test"
    assert entry["level"] == "INFO"
    assert entry["message"] == "Sweep finished"
    assert "source" not in entry
    assert "data" not in entry


def test_warnings_carry_source_and_data():
    formatter = JSONFormatter()

    entry = json.loads(formatter.format(_record(logging.ERROR, "Amount mismatch", expected=10000, reported=1)))

    assert entry["service"] == "api"
    assert entry["source"].endswith(":42")
    assert entry["data"] == {"expected": 10000, "reported": 1}
