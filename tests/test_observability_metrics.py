import pytest

from sew4mi.observability.metrics import (
    get_counter_value,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    record_event,
    reset_metrics,
    set_gauge,
    timed,
)


def test_metrics_snapshot_accumulates_counts():
    reset_metrics()
    increment_counter("test_counter")
    increment_counter("test_counter", amount=2, labels={"route": "/example"})
    set_gauge("test_gauge", 5)
    observe_latency("test_latency", 100, labels={"route": "/example"})
    observe_latency("test_latency", 50, labels={"route": "/example"})

    snapshot = get_metrics_snapshot()
    counters = snapshot["counters"]["test_counter"]
    assert len(counters) == 2

    gauges = snapshot["gauges"]["test_gauge"]
    assert gauges[0]["value"] == 5

    hist = snapshot["histograms"]["test_latency"][0]["stats"]
    assert hist["count"] == 2
    assert hist["max"] == 100


def test_counter_value_sums_label_series():
    increment_counter("escrow_releases_total", labels={"stage": "FITTING"})
    increment_counter("escrow_releases_total", amount=2, labels={"stage": "FINAL"})

    assert get_counter_value("escrow_releases_total") == 3
    assert get_counter_value("escrow_releases_total", labels={"stage": "FINAL"}) == 2
    assert get_counter_value("escrow_releases_total", labels={"stage": "DEPOSIT"}) == 0


def test_timed_records_even_when_block_raises():
    with timed("cron_job_ms", labels={"job": "ok"}):
        pass
    with pytest.raises(RuntimeError):
        with timed("cron_job_ms", labels={"job": "boom"}):
            raise RuntimeError("job failed")

    series = get_metrics_snapshot()["histograms"]["cron_job_ms"]
    assert {tuple(s["labels"].items()) for s in series} == {(("job", "ok"),), (("job", "boom"),)}


def test_events_are_recorded_and_reset():
    record_event("escrow_deposit_processed", {"order_id": 7, "amount": 100.0})

    events = get_metrics_snapshot()["events"]
    assert events[-1]["name"] == "escrow_deposit_processed"
    assert events[-1]["payload"]["order_id"] == 7

    reset_metrics()
    assert get_metrics_snapshot()["events"] == []
