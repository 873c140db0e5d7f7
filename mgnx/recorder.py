"""Application metrics: counters, gauges and histograms with a text exposition."""

from __future__ import annotations

import bisect
import math
import threading
from dataclasses import dataclass
from typing import Iterable, Iterator, Sequence

NAMESPACE = "mgnx"


def exponential_buckets(start: float, factor: float, count: int) -> tuple[float, ...]:
    """Return ``count`` bucket bounds starting at ``start``, each ``factor`` times the last."""
    if count < 1:
        raise ValueError("exponential_buckets needs a positive count")
    if start <= 0:
        raise ValueError("exponential_buckets needs a positive start value")
    if factor <= 1:
        raise ValueError("exponential_buckets needs a factor greater than 1")
    buckets = []
    value = start
    for _ in range(count):
        buckets.append(value)
        value *= factor
    return tuple(buckets)


def _format_value(value: float) -> str:
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if math.isnan(value):
        return "NaN"
    if float(value).is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


LabelValues = Sequence[object]
Sample = tuple[str, tuple[tuple[str, str], ...], float]


class _Metric:
    kind = "untyped"

    def __init__(
        self,
        name: str,
        help: str,
        labelnames: Iterable[str] = (),
        namespace: str = NAMESPACE,
    ) -> None:
        self.name = f"{namespace}_{name}" if namespace else name
        self.help = help
        self.labelnames = tuple(labelnames)
        self._lock = threading.Lock()

    def _key(self, labels: LabelValues) -> tuple[str, ...]:
        key = tuple(str(v) for v in labels)
        if len(key) != len(self.labelnames):
            raise ValueError(
                f"{self.name}: expected {len(self.labelnames)} label values, got {len(key)}"
            )
        return key

    def _pairs(self, key: tuple[str, ...]) -> tuple[tuple[str, str], ...]:
        return tuple(zip(self.labelnames, key))

    def samples(self) -> list[Sample]:
        raise NotImplementedError


class _ScalarMetric(_Metric):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._values: dict[tuple[str, ...], float] = {}
        if not self.labelnames:
            self._values[()] = 0.0

    def _value(self, labels: LabelValues) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def samples(self) -> list[Sample]:
        with self._lock:
            items = sorted(self._values.items())
        return [("", self._pairs(key), value) for key, value in items]


class Counter(_ScalarMetric):
    """A monotonically increasing value."""

    kind = "counter"

    def inc(self, amount: float = 1.0, labels: LabelValues = ()) -> None:
        if amount < 0:
            raise ValueError(f"{self.name}: counters cannot decrease")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def get(self, labels: LabelValues = ()) -> float:
        """Return the current count for the given label values (0 if never incremented)."""
        return self._value(labels)


class Gauge(_ScalarMetric):
    """A value that can go up and down."""

    kind = "gauge"

    def set(self, value: float, labels: LabelValues = ()) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def add(self, delta: float, labels: LabelValues = ()) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + delta

    def get(self, labels: LabelValues = ()) -> float:
        """Return the current value for the given label values (0 if never set)."""
        return self._value(labels)


@dataclass(frozen=True)
class HistogramSnapshot:
    """Cumulative bucket counts (upper bound, count), total count and sum."""

    buckets: tuple[tuple[float, int], ...]
    count: int
    sum: float


@dataclass
class _HistogramState:
    counts: list[int]
    total: float = 0.0
    observations: int = 0


class Histogram(_Metric):
    """Distribution of observed values over fixed buckets."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        buckets: Sequence[float],
        labelnames: Iterable[str] = (),
        namespace: str = NAMESPACE,
    ) -> None:
        super().__init__(name, help, labelnames, namespace)
        bounds = [float(b) for b in buckets if not math.isinf(b)]
        if any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError(f"{self.name}: buckets must be strictly increasing")
        self.buckets = tuple(bounds)
        self._states: dict[tuple[str, ...], _HistogramState] = {}
        if not self.labelnames:
            self._states[()] = self._new_state()

    def _new_state(self) -> _HistogramState:
        return _HistogramState(counts=[0] * (len(self.buckets) + 1))

    def observe(self, value: float, labels: LabelValues = ()) -> None:
        key = self._key(labels)
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = self._states[key] = self._new_state()
            state.counts[index] += 1
            state.total += value
            state.observations += 1

    def _snapshot_of(self, state: _HistogramState) -> HistogramSnapshot:
        bounds = self.buckets + (math.inf,)
        cumulative = []
        running = 0
        for bound, count in zip(bounds, state.counts):
            running += count
            cumulative.append((bound, running))
        return HistogramSnapshot(tuple(cumulative), state.observations, state.total)

    def snapshot(self, labels: LabelValues = ()) -> HistogramSnapshot:
        key = self._key(labels)
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = self._new_state()
            return self._snapshot_of(
                _HistogramState(list(state.counts), state.total, state.observations)
            )

    def samples(self) -> list[Sample]:
        with self._lock:
            states = sorted(
                (key, _HistogramState(list(s.counts), s.total, s.observations))
                for key, s in self._states.items()
            )
        result: list[Sample] = []
        for key, state in states:
            pairs = self._pairs(key)
            snap = self._snapshot_of(state)
            for bound, count in snap.buckets:
                result.append(("_bucket", pairs + (("le", _format_value(bound)),), count))
            result.append(("_sum", pairs, snap.sum))
            result.append(("_count", pairs, snap.count))
        return result


class Registry:
    """A set of uniquely named metrics that can be rendered as text."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def register(self, metric: _Metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"duplicate metric registration: {metric.name}")
            self._metrics[metric.name] = metric

    def collect(self) -> tuple[_Metric, ...]:
        with self._lock:
            return tuple(self._metrics.values())

    def _lines(self) -> Iterator[str]:
        for metric in self.collect():
            samples = metric.samples()
            if not samples:
                continue
            yield f"# HELP {metric.name} {_escape_help(metric.help)}"
            yield f"# TYPE {metric.name} {metric.kind}"
            for suffix, pairs, value in samples:
                labels = ""
                if pairs:
                    labels = "{" + ",".join(
                        f'{k}="{_escape_label(v)}"' for k, v in pairs
                    ) + "}"
                yield f"{metric.name}{suffix}{labels} {_format_value(value)}"

    def render(self) -> str:
        """Render all metrics in the plain-text exposition format."""
        return "".join(line + "\n" for line in self._lines())


SUB_SECOND_BUCKETS = exponential_buckets(0.001, 2, 12)
DISCOVERY_BUCKETS = exponential_buckets(0.05, 2, 10)
FETCH_BUCKETS = exponential_buckets(0.05, 2, 9)
PEER_COUNT_BUCKETS = (0, 1, 2, 3, 5, 8, 13, 21, 34, 55, 89, 144, 233)


class Metrics:
    """Every metric the application records."""

    def __init__(self) -> None:
        self.dht_discovery_queue_depth = Gauge(
            "dht_discovery_queue_depth", "Current discovery queue length.")
        self.dht_queue_capacity = Gauge("dht_queue_capacity", "Discovery queue capacity.")
        self.dht_discovery_queue_dropped_total = Counter(
            "dht_discovery_queue_dropped_total", "Samples dropped due to full queue.")
        self.discovery_work_items_total = Counter(
            "discovery_work_items_total", "Discovery worker completions.", ["result"])
        self.discovery_duration_seconds = Histogram(
            "discovery_duration_seconds", "get_peers lookup duration.", DISCOVERY_BUCKETS)
        self.crawler_queries_total = Counter(
            "crawler_queries_total", "Queries issued by crawler.", ["type", "mode", "worker"])
        self.crawler_traversal_queue_size = Gauge(
            "crawler_traversal_queue_size", "Size of crawler traversal heap.", ["worker"])
        self.crawler_cooldowns_active = Gauge(
            "crawler_cooldowns_active", "Number of nodes in cooldown.", ["worker"])

        self.dht_messages_in_total = Counter(
            "dht_messages_in_total", "DHT messages received.", ["type"])
        self.dht_packets_in_total = Counter("dht_packets_in_total", "UDP packets received.")
        self.dht_packets_out_total = Counter("dht_packets_out_total", "UDP packets sent.")
        self.dht_routing_table_size = Gauge(
            "dht_routing_table_size", "Routing table node count.")

        self.indexer_workers_active = Gauge(
            "indexer_workers_active", "Number of active indexer workers.")
        self.indexer_peers_processed_total = Counter(
            "indexer_peers_processed_total", "Peers processed from DHT.", ["result"])
        self.indexer_metadata_fetched_total = Counter(
            "indexer_metadata_fetched_total", "Successful metadata fetches.")
        self.indexer_metadata_failed_total = Counter(
            "indexer_metadata_failed_total", "Failed metadata fetches.", ["reason"])
        self.indexer_fetch_duration_seconds = Histogram(
            "indexer_fetch_duration_seconds", "Metadata fetch duration.", FETCH_BUCKETS)
        self.indexer_db_upserts_total = Counter(
            "indexer_db_upserts_total", "DB upsert operations.")
        self.torrents_indexed_total = Counter(
            "torrents_indexed_total", "Torrents indexed.", ["type"])

        self.scrape_cycles_total = Counter("scrape_cycles_total", "Scrape cycle executions.")
        self.scrape_torrents_updated_total = Counter(
            "scrape_torrents_updated_total", "Torrents updated with scrape data.")
        self.scrape_dead_detected_total = Counter(
            "scrape_dead_detected_total", "Torrents marked as dead.")
        self.scrape_errors_total = Counter("scrape_errors_total", "Scrape operation errors.")
        self.scrape_duration_seconds = Histogram(
            "scrape_duration_seconds", "Duration of scrape cycle.", SUB_SECOND_BUCKETS)
        self.scrape_history_pruned_total = Counter(
            "scrape_history_pruned_total", "Scrape history records pruned.")

        self.torznab_requests_total = Counter("torznab_requests_total", "Total HTTP requests.")
        self.torznab_request_duration_seconds = Histogram(
            "torznab_request_duration_seconds", "Request latency.", SUB_SECOND_BUCKETS)

        self.metadata_fetch_attempts_total = Counter(
            "metadata_fetch_attempts_total", "Metadata fetch attempts.")
        self.metadata_fetch_success_total = Counter(
            "metadata_fetch_success_total", "Successful metadata fetches.")
        self.metadata_fetch_failed_total = Counter(
            "metadata_fetch_failed_total", "Failed metadata fetches.", ["reason"])
        self.metadata_fetch_duration_seconds = Histogram(
            "metadata_fetch_duration_seconds", "Metadata fetch duration.", FETCH_BUCKETS)

        self.torrents_total = Gauge(
            "torrents_total", "Number of torrents in the database by state.", ["state"])
        self.torrents_rejected_total = Counter(
            "torrents_rejected_total", "Torrents rejected during classification.", ["reason"])
        self.indexer_db_errors_total = Counter(
            "indexer_db_errors_total", "Database errors in the indexer by operation.",
            ["operation"])

        self.crawler_samples_total = Counter(
            "crawler_samples_total",
            "BEP-51 infohash samples by result (new/duplicate/dropped). "
            "A high duplicate ratio confirms bloom filter saturation.",
            ["result"])
        self.indexer_db_query_duration_seconds = Histogram(
            "indexer_db_query_duration_seconds",
            "DB query latency inside the indexer by operation (lookup, upsert, "
            "insert_files, classify_update). A slow lookup is especially costly "
            "since it runs on every infohash.",
            SUB_SECOND_BUCKETS, ["operation"])
        self.indexer_rate_limiter_wait_seconds = Histogram(
            "indexer_rate_limiter_wait_seconds",
            "Time blocked waiting for a rate-limiter token before launching each "
            "BEP-09 peer goroutine. High values mean the rate limiter is the "
            "throughput ceiling.",
            SUB_SECOND_BUCKETS)
        self.indexer_peers_per_infohash = Histogram(
            "indexer_peers_per_infohash",
            "Number of peers available when a non-duplicate infohash enters the "
            "indexer. Zero-heavy distributions mean BEP-09 is structurally "
            "supply-limited.",
            PEER_COUNT_BUCKETS)
        self.discovered_channel_depth = Gauge(
            "discovered_channel_depth",
            "Instantaneous depth of the discovered channel between discovery "
            "workers and indexer workers. Near-zero means indexer workers are starved.")
        self.discovery_workers_busy = Gauge(
            "discovery_workers_busy",
            "Number of discovery workers actively running a get_peers lookup.")
        self.indexer_workers_busy = Gauge(
            "indexer_workers_busy",
            "Number of indexer workers actively processing an infohash.")

    def collectors(self) -> tuple[_Metric, ...]:
        """All metrics, in registration order."""
        return (
            self.dht_discovery_queue_depth,
            self.dht_queue_capacity,
            self.dht_discovery_queue_dropped_total,
            self.discovery_work_items_total,
            self.discovery_duration_seconds,
            self.crawler_queries_total,
            self.crawler_traversal_queue_size,
            self.crawler_cooldowns_active,
            self.dht_messages_in_total,
            self.dht_packets_in_total,
            self.dht_packets_out_total,
            self.dht_routing_table_size,
            self.indexer_workers_active,
            self.indexer_peers_processed_total,
            self.indexer_metadata_fetched_total,
            self.indexer_metadata_failed_total,
            self.indexer_fetch_duration_seconds,
            self.indexer_db_upserts_total,
            self.torrents_indexed_total,
            self.scrape_cycles_total,
            self.scrape_torrents_updated_total,
            self.scrape_dead_detected_total,
            self.scrape_errors_total,
            self.scrape_duration_seconds,
            self.scrape_history_pruned_total,
            self.torznab_requests_total,
            self.torznab_request_duration_seconds,
            self.metadata_fetch_attempts_total,
            self.metadata_fetch_success_total,
            self.metadata_fetch_failed_total,
            self.metadata_fetch_duration_seconds,
            self.torrents_total,
            self.torrents_rejected_total,
            self.indexer_db_errors_total,
            self.crawler_samples_total,
            self.discovered_channel_depth,
            self.discovery_workers_busy,
            self.indexer_workers_busy,
            self.indexer_db_query_duration_seconds,
            self.indexer_rate_limiter_wait_seconds,
            self.indexer_peers_per_infohash,
        )


class Recorder:
    """Records application events; does nothing when built without a registry."""

    def __init__(self, registry: Registry | None = None) -> None:
        self._m: Metrics | None = None
        if registry is None:
            return
        metrics = Metrics()
        for collector in metrics.collectors():
            registry.register(collector)
        self._m = metrics

    @staticmethod
    def no_op() -> "Recorder":
        return Recorder()

    @property
    def metrics(self) -> Metrics | None:
        return self._m

    def set_dht_discovery_queue_depth(self, v: float) -> None:
        if self._m is not None:
            self._m.dht_discovery_queue_depth.set(v)

    def set_dht_queue_capacity(self, v: float) -> None:
        if self._m is not None:
            self._m.dht_queue_capacity.set(v)

    def inc_dht_discovery_queue_dropped_total(self) -> None:
        if self._m is not None:
            self._m.dht_discovery_queue_dropped_total.inc()

    def inc_discovery_work_items_total(self, result: str) -> None:
        if self._m is not None:
            self._m.discovery_work_items_total.inc(labels=(result,))

    def observe_discovery_duration_seconds(self, v: float) -> None:
        if self._m is not None:
            self._m.discovery_duration_seconds.observe(v)

    def inc_crawler_queries_total(self, query_type: str, mode: str, worker: int) -> None:
        if self._m is not None:
            self._m.crawler_queries_total.inc(labels=(query_type, mode, str(worker)))

    def set_crawler_traversal_queue_size(self, worker: int, v: float) -> None:
        if self._m is not None:
            self._m.crawler_traversal_queue_size.set(v, labels=(str(worker),))

    def set_crawler_cooldowns_active(self, worker: int, v: float) -> None:
        if self._m is not None:
            self._m.crawler_cooldowns_active.set(v, labels=(str(worker),))

    def inc_dht_messages_in_total(self, msg_type: str) -> None:
        if self._m is not None:
            self._m.dht_messages_in_total.inc(labels=(msg_type,))

    def inc_dht_packets_in_total(self) -> None:
        if self._m is not None:
            self._m.dht_packets_in_total.inc()

    def inc_dht_packets_out_total(self) -> None:
        if self._m is not None:
            self._m.dht_packets_out_total.inc()

    def set_dht_routing_table_size(self, v: float) -> None:
        if self._m is not None:
            self._m.dht_routing_table_size.set(v)

    def set_indexer_workers_active(self, v: float) -> None:
        if self._m is not None:
            self._m.indexer_workers_active.set(v)

    def inc_indexer_peers_processed_total(self, result: str) -> None:
        if self._m is not None:
            self._m.indexer_peers_processed_total.inc(labels=(result,))

    def inc_indexer_metadata_fetched_total(self) -> None:
        if self._m is not None:
            self._m.indexer_metadata_fetched_total.inc()

    def inc_indexer_metadata_failed_total(self, reason: str) -> None:
        if self._m is not None:
            self._m.indexer_metadata_failed_total.inc(labels=(reason,))

    def observe_indexer_fetch_duration_seconds(self, v: float) -> None:
        if self._m is not None:
            self._m.indexer_fetch_duration_seconds.observe(v)

    def inc_indexer_db_upserts_total(self) -> None:
        if self._m is not None:
            self._m.indexer_db_upserts_total.inc()

    def inc_torrents_indexed_total(self, class_type: str) -> None:
        if self._m is not None:
            self._m.torrents_indexed_total.inc(labels=(class_type,))

    def inc_scrape_cycles_total(self) -> None:
        if self._m is not None:
            self._m.scrape_cycles_total.inc()

    def inc_scrape_torrents_updated_total(self) -> None:
        if self._m is not None:
            self._m.scrape_torrents_updated_total.inc()

    def inc_scrape_dead_detected_total(self) -> None:
        if self._m is not None:
            self._m.scrape_dead_detected_total.inc()

    def inc_scrape_errors_total(self) -> None:
        if self._m is not None:
            self._m.scrape_errors_total.inc()

    def observe_scrape_duration_seconds(self, v: float) -> None:
        if self._m is not None:
            self._m.scrape_duration_seconds.observe(v)

    def inc_scrape_history_pruned_total(self) -> None:
        if self._m is not None:
            self._m.scrape_history_pruned_total.inc()

    def inc_metadata_fetch_attempts_total(self) -> None:
        if self._m is not None:
            self._m.metadata_fetch_attempts_total.inc()

    def inc_metadata_fetch_success_total(self) -> None:
        if self._m is not None:
            self._m.metadata_fetch_success_total.inc()

    def inc_metadata_fetch_failed_total(self, reason: str) -> None:
        if self._m is not None:
            self._m.metadata_fetch_failed_total.inc(labels=(reason,))

    def observe_metadata_fetch_duration_seconds(self, v: float) -> None:
        if self._m is not None:
            self._m.metadata_fetch_duration_seconds.observe(v)

    def inc_torznab_requests_total(self) -> None:
        if self._m is not None:
            self._m.torznab_requests_total.inc()

    def observe_torznab_request_duration_seconds(self, v: float) -> None:
        if self._m is not None:
            self._m.torznab_request_duration_seconds.observe(v)

    def set_torrents_total(self, state: str, count: float) -> None:
        if self._m is not None:
            self._m.torrents_total.set(count, labels=(state,))

    def inc_torrents_rejected_total(self, reason: str) -> None:
        if self._m is not None:
            self._m.torrents_rejected_total.inc(labels=(reason,))

    def inc_indexer_db_errors_total(self, operation: str) -> None:
        if self._m is not None:
            self._m.indexer_db_errors_total.inc(labels=(operation,))

    def add_crawler_samples_total(self, result: str, n: int) -> None:
        if self._m is not None:
            self._m.crawler_samples_total.inc(float(n), labels=(result,))

    def set_discovered_channel_depth(self, v: float) -> None:
        if self._m is not None:
            self._m.discovered_channel_depth.set(v)

    def add_discovery_workers_busy(self, delta: float) -> None:
        if self._m is not None:
            self._m.discovery_workers_busy.add(delta)

    def add_indexer_workers_busy(self, delta: float) -> None:
        if self._m is not None:
            self._m.indexer_workers_busy.add(delta)

    def observe_indexer_db_query_duration_seconds(self, operation: str, v: float) -> None:
        if self._m is not None:
            self._m.indexer_db_query_duration_seconds.observe(v, labels=(operation,))

    def observe_indexer_rate_limiter_wait_seconds(self, v: float) -> None:
        if self._m is not None:
            self._m.indexer_rate_limiter_wait_seconds.observe(v)

    def observe_indexer_peers_per_infohash(self, v: float) -> None:
        if self._m is not None:
            self._m.indexer_peers_per_infohash.observe(v)