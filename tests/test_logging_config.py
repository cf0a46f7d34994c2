import json
import logging

import pytest

from citybrief.utils.logging_config import PerformanceTracker, StructuredFormatter, log_pipeline_metrics


def _record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("citybrief.test", logging.INFO, __file__, 10, msg, None, None, func="collect")
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_structured_formatter_carries_city_and_data_type():
    line = StructuredFormatter().format(_record("cache miss", city="Austin", data_type="news"))

    entry = json.loads(line)
    assert entry["msg"] == "cache miss"
    assert entry["city"] == "Austin"
    assert entry["data_type"] == "news"
    assert "job" not in entry


def test_pipeline_metrics_are_attached_to_the_record(caplog):
    logger = logging.getLogger("citybrief.test.metrics")

    with caplog.at_level(logging.INFO, logger="citybrief.test.metrics"):
        metrics = log_pipeline_metrics(logger, "news:Austin", 30, 12, duplicates=2)

    assert metrics == {"input": 30, "output": 12, "dropped": 18, "duplicates": 2}
    record = caplog.records[-1]
    assert record.stage == "news:Austin"
    assert record.metrics == metrics
    assert json.loads(StructuredFormatter().format(record))["metrics"]["dropped"] == 18


def test_performance_tracker_flags_slow_and_failed_stages(caplog):
    logger = logging.getLogger("citybrief.test.perf")

    with caplog.at_level(logging.INFO, logger="citybrief.test.perf"):
        with PerformanceTracker("collect Austin", logger, slow_after_ms=-1):
            pass
        with pytest.raises(RuntimeError):
            with PerformanceTracker("collect Dallas", logger):
                raise RuntimeError("boom")

    levels = [(r.levelname, r.getMessage().split(" ")[1]) for r in caplog.records]
    assert levels == [("WARNING", "collect"), ("ERROR", "collect")]
    assert "boom" in caplog.records[-1].getMessage()
