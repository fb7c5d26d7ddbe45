"""
Flush metrics and process statistics for the term buffer.

The buffer registers a handful of named metrics on a MetricsCollector and
updates them from its flush thread. Histograms keep running aggregates
rather than individual samples, so a buffer that flushes for weeks uses
constant memory.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

import psutil

logger = logging.getLogger(__name__)


class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass
class Metric:
    """
    One named metric.

    For counters and gauges ``value`` is the current reading. For
    histograms it is the sum of all observations, with ``count``,
    ``minimum`` and ``maximum`` kept alongside.
    """
    name: str
    metric_type: MetricType
    description: str = ""
    unit: str = ""
    value: float = 0.0
    count: int = 0
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def _require(self, metric_type: MetricType, action: str) -> None:
        if self.metric_type is not metric_type:
            raise ValueError(f"{self.name} is a {self.metric_type.value}, cannot {action}")

    def inc(self, amount: float = 1.0) -> None:
        self._require(MetricType.COUNTER, "inc")
        if amount < 0:
            raise ValueError(f"{self.name}: counters only go up")
        self.value += amount

    def set(self, value: float) -> None:
        self._require(MetricType.GAUGE, "set")
        self.value = value

    def observe(self, sample: float) -> None:
        self._require(MetricType.HISTOGRAM, "observe")
        self.value += sample
        self.count += 1
        self.minimum = sample if self.minimum is None else min(self.minimum, sample)
        self.maximum = sample if self.maximum is None else max(self.maximum, sample)

    def get_value(self) -> float:
        """Current reading; the mean for histograms."""
        if self.metric_type is MetricType.HISTOGRAM:
            return self.value / self.count if self.count else 0.0
        return self.value

    def summary(self) -> Dict[str, float]:
        """Aggregates of a histogram; empty for other types."""
        if self.metric_type is not MetricType.HISTOGRAM:
            return {}
        return {
            "count": self.count,
            "sum": self.value,
            "min": self.minimum or 0.0,
            "max": self.maximum or 0.0,
            "avg": self.get_value(),
        }

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "name": self.name,
            "type": self.metric_type.value,
            "description": self.description,
            "unit": self.unit,
            "value": self.get_value(),
        }
        if self.metric_type is MetricType.HISTOGRAM:
            d["summary"] = self.summary()
        return d


class MetricsCollector:
    """
    Thread-safe registry of named metrics.

    Updates to a name that was never registered are ignored, so code can
    report into a collector shared with other components.
    """

    def __init__(self):
        self._metrics: Dict[str, Metric] = {}
        self._lock = threading.Lock()
        self._started = time.monotonic()

    def _register(self, name: str, metric_type: MetricType, description: str, unit: str) -> Metric:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = Metric(name, metric_type, description, unit)
                self._metrics[name] = metric
            return metric

    def counter(self, name: str, description: str = "", unit: str = "") -> Metric:
        return self._register(name, MetricType.COUNTER, description, unit)

    def gauge(self, name: str, description: str = "", unit: str = "") -> Metric:
        return self._register(name, MetricType.GAUGE, description, unit)

    def histogram(self, name: str, description: str = "", unit: str = "") -> Metric:
        return self._register(name, MetricType.HISTOGRAM, description, unit)

    def inc(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            if name in self._metrics:
                self._metrics[name].inc(amount)

    def set(self, name: str, value: float) -> None:
        with self._lock:
            if name in self._metrics:
                self._metrics[name].set(value)

    def observe(self, name: str, sample: float) -> None:
        with self._lock:
            if name in self._metrics:
                self._metrics[name].observe(sample)

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Observe the duration of the block into histogram ``name``, even if it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - start)

    def value(self, name: str) -> float:
        """Current reading of ``name``, 0.0 if it is not registered."""
        with self._lock:
            metric = self._metrics.get(name)
            return metric.get_value() if metric else 0.0

    def get(self, name: str) -> Optional[Metric]:
        with self._lock:
            return self._metrics.get(name)

    def snapshot(self) -> Dict[str, float]:
        """Name to current reading, for one-line log output."""
        with self._lock:
            return {name: m.get_value() for name, m in self._metrics.items()}

    def export(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [m.to_dict() for m in self._metrics.values()]

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started


@dataclass
class ProcessStats:
    """Memory and thread usage of this process, to watch buffer growth."""
    rss_mb: float
    thread_count: int
    pid: int

    @classmethod
    def collect(cls) -> "ProcessStats":
        process = psutil.Process(os.getpid())
        return cls(
            rss_mb=process.memory_info().rss / (1024 * 1024),
            thread_count=process.num_threads(),
            pid=process.pid,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rss_mb": self.rss_mb,
            "thread_count": self.thread_count,
            "pid": self.pid,
        }
