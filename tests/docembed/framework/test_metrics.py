import json

import pytest

from docembed.framework.metrics import MetricsCollector


def test_counters_and_gauges():
    metrics = MetricsCollector("run")
    metrics.increment("records_emitted")
    metrics.increment("records_emitted", 4)
    metrics.gauge("queue_depth", 3)

    summary = metrics.get_summary()
    assert metrics.counter("records_emitted") == 5
    assert metrics.counter("never_touched") == 0
    assert summary["gauges"] == {"queue_depth": 3}


def test_timer_records_even_when_block_raises():
    metrics = MetricsCollector("run")
    with metrics.timer("inference"):
        pass
    with pytest.raises(RuntimeError):
        with metrics.timer("inference"):
            raise RuntimeError("boom")

    stats = metrics.get_summary()["timer_stats"]["inference"]
    assert stats["count"] == 2
    assert stats["min"] <= stats["average"] <= stats["max"]
    assert stats["min"] <= stats["p95"] <= stats["max"]


def test_flush_appends_jsonl(tmp_path):
    metrics = MetricsCollector("run-1", metrics_dir=tmp_path)
    metrics.increment("batches_completed")
    metrics.record_error("batch failed")

    path = metrics.flush()
    metrics.flush()

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert path == tmp_path / "metrics.jsonl"
    assert len(lines) == 2
    assert lines[0]["component"] == "run-1"
    assert lines[0]["counters"] == {"batches_completed": 1}
    assert lines[0]["errors"][0]["error"] == "batch failed"
