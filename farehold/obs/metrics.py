"""Minimal in-process counters and latency histograms.

Used for search-record cache hits, exchange-rate fetches, collaborator
latencies and booking outcomes. No external dependencies.
"""

from contextlib import contextmanager
from typing import Dict, Any, Iterator, Optional, Tuple, List
import threading
import time


_LOCK = threading.Lock()

LabelsKey = Tuple[Tuple[str, str], ...]

_COUNTERS: Dict[Tuple[str, LabelsKey], int] = {}

# name -> {labels_key -> {"counts": [...], "sum_ms": float}}
_LATENCY_BINS_MS: List[int] = [50, 100, 250, 500, 1000, 3000, 10000, 30000]
_HISTOGRAMS: Dict[str, Dict[LabelsKey, Dict[str, Any]]] = {}


def _labels_key(labels: Optional[Dict[str, str]]) -> LabelsKey:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def inc_counter(metric: str, labels: Optional[Dict[str, str]] = None, amount: int = 1) -> None:
    key = (metric, _labels_key(labels))
    with _LOCK:
        _COUNTERS[key] = _COUNTERS.get(key, 0) + amount


def get_counter(metric: str, labels: Optional[Dict[str, str]] = None) -> int:
    with _LOCK:
        return _COUNTERS.get((metric, _labels_key(labels)), 0)


def record_timing(metric: str, value_ms: float, labels: Optional[Dict[str, str]] = None) -> None:
    if value_ms is None:
        return
    idx = len(_LATENCY_BINS_MS)
    for i, upper in enumerate(_LATENCY_BINS_MS):
        if value_ms <= upper:
            idx = i
            break
    lk = _labels_key(labels)
    with _LOCK:
        series = _HISTOGRAMS.setdefault(metric, {})
        entry = series.get(lk)
        if entry is None:
            entry = {"counts": [0] * (len(_LATENCY_BINS_MS) + 1), "sum_ms": 0.0}
            series[lk] = entry
        entry["counts"][idx] += 1
        entry["sum_ms"] += float(value_ms)


@contextmanager
def timed(metric: str, labels: Optional[Dict[str, str]] = None) -> Iterator[None]:
    """Record the wall time of the enclosed block, even when it raises."""
    start = time.monotonic()
    try:
        yield
    finally:
        record_timing(metric, (time.monotonic() - start) * 1000.0, labels)


def get_metrics_snapshot() -> Dict[str, Any]:
    with _LOCK:
        counters = [
            {"name": name, "labels": dict(lk), "value": value}
            for (name, lk), value in _COUNTERS.items()
        ]
        histograms = [
            {
                "name": name,
                "labels": dict(lk),
                "bins_ms": list(_LATENCY_BINS_MS),
                "counts": list(entry["counts"]),
                "sum_ms": entry["sum_ms"],
            }
            for name, series in _HISTOGRAMS.items()
            for lk, entry in series.items()
        ]
    return {"counters": counters, "histograms": histograms}


def reset_metrics() -> None:
    with _LOCK:
        _COUNTERS.clear()
        _HISTOGRAMS.clear()
