"""
Metrics Store

Thread-safe map from (metric name, label values) to the current value of the
series. The poller and the session notification write to it, the HTTP
handler reads it through StoreCollector. Every write and every snapshot
holds the same lock, so a scrape never sees a half-written value. Series are
created on first write and never removed.
"""
import threading
from collections import OrderedDict
from typing import Dict, List, NamedTuple, Sequence, Tuple

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

METRIC_PREFIX = "envoy_"

GAUGE = "gauge"
COUNTER = "counter"

# Metric names
PRODUCTION_WATTS_NOW = METRIC_PREFIX + "production_watts_now"
PRODUCTION_WH_LIFETIME = METRIC_PREFIX + "production_wh_lifetime"
INVERTER_LAST_REPORT_WATTS = METRIC_PREFIX + "inverter_last_report_watts"
JWT_REFRESHES = METRIC_PREFIX + "jwt_refreshes"
SESSION_REFRESHES = METRIC_PREFIX + "session_refreshes"
SESSION_USES = METRIC_PREFIX + "session_uses"
POLL_ERRORS = METRIC_PREFIX + "poll_errors"
LAST_SUCCESSFUL_POLL = METRIC_PREFIX + "last_successful_poll_timestamp_seconds"


class Sample(NamedTuple):
    name: str
    labels: Dict[str, str]
    kind: str
    help: str
    value: float


class _Metric(object):
    def __init__(self, name: str, kind: str, documentation: str, labelnames: Sequence[str]):
        self.name = name
        self.kind = kind
        self.documentation = documentation
        self.labelnames = tuple(labelnames)
        self.values: "OrderedDict[Tuple[str, ...], float]" = OrderedDict()


class MetricsStore(object):
    def __init__(self):
        self._lock = threading.Lock()
        self._metrics: "OrderedDict[str, _Metric]" = OrderedDict()

    def describe(self, name: str, kind: str, documentation: str, labelnames: Sequence[str] = ()):
        """Declare a metric before it is written"""
        if kind not in (GAUGE, COUNTER):
            raise ValueError(f"Unknown metric kind: {kind}")
        with self._lock:
            existing = self._metrics.get(name)
            if existing is not None:
                if existing.kind != kind or existing.labelnames != tuple(labelnames):
                    raise ValueError(f"Metric {name} already declared with a different kind or labels")
                return
            self._metrics[name] = _Metric(name, kind, documentation, labelnames)

    def _key(self, metric: _Metric, labels: Dict[str, str]) -> Tuple[str, ...]:
        if set(labels) != set(metric.labelnames):
            raise ValueError(f"Metric {metric.name} expects labels {metric.labelnames}, got {tuple(labels)}")
        return tuple(str(labels[n]) for n in metric.labelnames)

    def _get(self, name: str, kind: str) -> _Metric:
        metric = self._metrics.get(name)
        if metric is None:
            raise ValueError(f"Metric {name} has not been declared")
        if metric.kind != kind:
            raise ValueError(f"Metric {name} is a {metric.kind}, not a {kind}")
        return metric

    def set_gauge(self, name: str, labels: Dict[str, str], value: float):
        with self._lock:
            metric = self._get(name, GAUGE)
            metric.values[self._key(metric, labels)] = float(value)

    def increment_counter(self, name: str, labels: Dict[str, str]):
        with self._lock:
            metric = self._get(name, COUNTER)
            key = self._key(metric, labels)
            metric.values[key] = metric.values.get(key, 0.0) + 1.0

    def get(self, name: str, labels: Dict[str, str]):
        """Current value of one series, None if it was never written"""
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                return None
            return metric.values.get(self._key(metric, labels))

    def snapshot(self) -> List[Sample]:
        """Copy of every series, in declaration then creation order"""
        with self._lock:
            return [Sample(m.name, dict(zip(m.labelnames, key)), m.kind, m.documentation, value)
                    for m in self._metrics.values()
                    for key, value in m.values.items()]

    def families(self) -> List[Tuple[str, str, str, Tuple[str, ...]]]:
        """Declared metrics as (name, kind, help, labelnames)"""
        with self._lock:
            return [(m.name, m.kind, m.documentation, m.labelnames) for m in self._metrics.values()]


def describe_envoy_metrics(store: MetricsStore) -> MetricsStore:
    """Declare every series the exporter publishes"""
    store.describe(PRODUCTION_WATTS_NOW, GAUGE, "Watts being produced now", ["gateway"])
    store.describe(PRODUCTION_WH_LIFETIME, GAUGE, "Watt-hour generated over lifetime", ["gateway"])
    store.describe(JWT_REFRESHES, COUNTER, "Number of JWT token refreshes during runtime", ["gateway"])
    store.describe(SESSION_REFRESHES, COUNTER, "Number of session refreshes during runtime", ["gateway"])
    store.describe(SESSION_USES, GAUGE, "Number of uses of the current session", ["gateway"])
    store.describe(INVERTER_LAST_REPORT_WATTS, GAUGE, "Generated watts by inverter", ["gateway", "serial"])
    store.describe(POLL_ERRORS, COUNTER, "Number of failed gateway requests per poll step", ["gateway", "step"])
    store.describe(LAST_SUCCESSFUL_POLL, GAUGE, "Unix time of the last poll cycle without errors", ["gateway"])
    return store


class StoreCollector(object):
    """Exposes a MetricsStore to a prometheus_client registry"""

    def __init__(self, store: MetricsStore):
        self.store = store

    def collect(self):
        families = OrderedDict()
        for name, kind, documentation, labelnames in self.store.families():
            if kind == COUNTER:
                family = CounterMetricFamily(name, documentation, labels=labelnames)
            else:
                family = GaugeMetricFamily(name, documentation, labels=labelnames)
            families[name] = (family, labelnames)
        for sample in self.store.snapshot():
            if sample.name not in families:
                # declared after families() was read
                continue
            family, labelnames = families[sample.name]
            family.add_metric([sample.labels[n] for n in labelnames], sample.value)
        return [family for family, _ in families.values()]
