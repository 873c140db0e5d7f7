import math

import pytest

from mgnx.recorder import (
    Counter,
    Gauge,
    Histogram,
    Recorder,
    Registry,
    exponential_buckets,
)


def test_exponential_buckets_sub_second_range():
    buckets = exponential_buckets(0.001, 2, 12)
    assert len(buckets) == 12
    assert buckets[0] == pytest.approx(0.001)
    assert buckets[-1] == pytest.approx(2.048)
    assert all(b / a == pytest.approx(2) for a, b in zip(buckets, buckets[1:]))


@pytest.mark.parametrize(
    "start, factor, count",
    [(0.001, 2, 0), (0, 2, 5), (-1, 2, 5), (0.05, 1, 5), (0.05, 0.5, 5)],
)
def test_exponential_buckets_rejects_bad_arguments(start, factor, count):
    with pytest.raises(ValueError):
        exponential_buckets(start, factor, count)


def test_counter_accumulates_amounts():
    counter = Counter("things_total", "Things.", ["kind"])
    counter.inc(labels=("a",))
    counter.inc(2.5, labels=("a",))
    assert counter.get(("a",)) == pytest.approx(3.5)
    assert counter.get(("b",)) == 0.0


def test_counter_rejects_negative():
    counter = Counter("things_total", "Things.")
    with pytest.raises(ValueError):
        counter.inc(-1)


def test_label_count_mismatch_raises():
    gauge = Gauge("level", "Level.", ["a", "b"])
    with pytest.raises(ValueError):
        gauge.set(1, labels=("only-one",))


def test_gauge_set_and_add():
    gauge = Gauge("level", "Level.")
    gauge.set(7)
    gauge.add(-7)
    assert gauge.get() == 0.0
    gauge.add(4)
    assert gauge.get() == 4.0


def test_histogram_buckets_are_cumulative():
    hist = Histogram("latency", "Latency.", exponential_buckets(0.05, 2, 9))
    values = [0.01, 0.2, 0.7, 3.0, 100.0]
    for v in values:
        hist.observe(v)
    snap = hist.snapshot()
    counts = [c for _, c in snap.buckets]
    assert counts == sorted(counts)
    assert snap.buckets[-1] == (math.inf, len(values))
    assert snap.count == len(values)
    assert snap.sum == pytest.approx(sum(values))


def test_histogram_rejects_unsorted_buckets():
    with pytest.raises(ValueError):
        Histogram("bad", "Bad.", [1, 1, 2])


def test_registry_duplicate_raises():
    registry = Registry()
    registry.register(Counter("dup_total", "Dup."))
    with pytest.raises(ValueError):
        registry.register(Counter("dup_total", "Dup again."))


def test_recorder_registers_all_metrics():
    registry = Registry()
    rec = Recorder(registry)
    names = {m.name for m in registry.collect()}
    assert "mgnx_dht_packets_in_total" in names
    assert "mgnx_indexer_peers_per_infohash" in names
    assert len(names) == len(rec.metrics.collectors())


def test_second_recorder_on_same_registry_raises():
    registry = Registry()
    Recorder(registry)
    with pytest.raises(ValueError):
        Recorder(registry)


def test_recorder_labels_worker_as_string():
    rec = Recorder(Registry())
    rec.inc_crawler_queries_total("find_node", "bfs", 3)
    rec.inc_crawler_queries_total("find_node", "bfs", 3)
    assert rec.metrics.crawler_queries_total.get(("find_node", "bfs", "3")) == 2.0


def test_recorder_busy_gauge_returns_to_zero():
    rec = Recorder(Registry())
    rec.add_indexer_workers_busy(1)
    rec.add_indexer_workers_busy(-1)
    assert rec.metrics.indexer_workers_busy.get() == 0.0


def test_recorder_add_crawler_samples():
    rec = Recorder(Registry())
    rec.add_crawler_samples_total("duplicate", 5)
    rec.add_crawler_samples_total("duplicate", 7)
    assert rec.metrics.crawler_samples_total.get(("duplicate",)) == 12.0


def test_recorder_torrents_total_by_state():
    rec = Recorder(Registry())
    rec.set_torrents_total("active", 42)
    assert rec.metrics.torrents_total.get(("active",)) == 42.0


def test_recorder_peers_per_infohash_bucket_edges():
    rec = Recorder(Registry())
    rec.observe_indexer_peers_per_infohash(3)
    snap = rec.metrics.indexer_peers_per_infohash.snapshot()
    by_bound = dict(snap.buckets)
    assert by_bound[2.0] == 0
    assert by_bound[3.0] == 1
    assert snap.sum == 3


def test_recorder_db_query_histogram_by_operation():
    rec = Recorder(Registry())
    rec.observe_indexer_db_query_duration_seconds("lookup", 0.004)
    snap = rec.metrics.indexer_db_query_duration_seconds.snapshot(("lookup",))
    other = rec.metrics.indexer_db_query_duration_seconds.snapshot(("upsert",))
    assert snap.count == 1
    assert other.count == 0


def test_render_exposition_format():
    registry = Registry()
    rec = Recorder(registry)
    rec.inc_dht_packets_in_total()
    rec.observe_indexer_peers_per_infohash(3)
    rec.inc_metadata_fetch_failed_total("connect")
    lines = registry.render().splitlines()
    assert "# TYPE mgnx_dht_packets_in_total counter" in lines
    assert "# HELP mgnx_dht_packets_in_total UDP packets received." in lines
    assert "mgnx_dht_packets_in_total 1" in lines
    assert 'mgnx_indexer_peers_per_infohash_bucket{le="3"} 1' in lines
    assert 'mgnx_indexer_peers_per_infohash_bucket{le="+Inf"} 1' in lines
    assert 'mgnx_metadata_fetch_failed_total{reason="connect"} 1' in lines


def test_render_skips_labelled_metric_without_samples():
    registry = Registry()
    Recorder(registry)
    text = registry.render()
    assert "mgnx_torrents_rejected_total" not in text
    assert "# TYPE mgnx_scrape_cycles_total counter" in text


def test_no_op_recorder_has_no_metrics():
    rec = Recorder.no_op()
    rec.inc_dht_packets_in_total()
    rec.observe_indexer_peers_per_infohash(3)
    rec.set_torrents_total("active", 1)
    rec.add_crawler_samples_total("new", 2)
    rec.inc_crawler_queries_total("ping", "bfs", 0)
    assert rec.metrics is None
    assert Recorder(None).metrics is None