from __future__ import annotations

import pytest

from edgecdn.common.metrics import Counter, Histogram, MetricsRegistry


def test_counter_renders_value() -> None:
    counter = Counter("edgecdn_test_total", "Test counter")
    counter.inc()
    counter.inc(2)
    assert counter.value == 3
    assert "edgecdn_test_total 3.0" in counter.render()


def test_counter_rejects_negative_increment() -> None:
    with pytest.raises(ValueError):
        Counter("edgecdn_test_total").inc(-1)


def test_histogram_buckets_are_cumulative() -> None:
    histogram = Histogram("edgecdn_test_seconds", buckets=[1.0, 0.1])
    histogram.observe(0.05)
    histogram.observe(0.5)
    histogram.observe(5.0)

    rendered = histogram.render()
    assert 'edgecdn_test_seconds_bucket{le="0.1"} 1' in rendered
    assert 'edgecdn_test_seconds_bucket{le="1.0"} 2' in rendered
    assert 'edgecdn_test_seconds_bucket{le="+Inf"} 3' in rendered
    assert "edgecdn_test_seconds_count 3" in rendered


def test_registry_returns_existing_metric() -> None:
    registry = MetricsRegistry()
    first = registry.register(Counter("edgecdn_dup_total"))
    second = registry.register(Counter("edgecdn_dup_total"))
    assert second is first
    assert registry.render().count("# TYPE edgecdn_dup_total counter") == 1
