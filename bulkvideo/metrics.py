"""
Thread-safe in-memory metrics for the bulk video worker.

Tracks pipeline health per stage:
  - Counters: items started/completed/failed, scenes, renders, fallbacks
  - Latency: stage duration samples (item, content, animation, render)
  - Gauges: active items, start time
  - Errors: the most recent failures, grouped by stage and type

Nothing here is persisted; per-item status of record lives in the durable
store. Served as JSON from GET /metrics.
"""

import time
import threading
from collections import Counter, defaultdict, deque
from typing import Deque, Dict

MAX_SAMPLES = 100
MAX_ERRORS = 50
RECENT_ERRORS_SHOWN = 10

_lock = threading.Lock()
_counters: Counter = Counter()
_gauges: Dict[str, float] = defaultdict(float)
_latency: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=MAX_SAMPLES))
_errors: Deque[dict] = deque(maxlen=MAX_ERRORS)


def inc_counter(name: str, amount: int = 1):
    """Increment a counter, e.g. 'items.completed' or 'animations.fallback'."""
    with _lock:
        _counters[name] += amount


def record_latency(stage: str, duration_ms: float):
    with _lock:
        _latency[stage].append(duration_ms)


def adjust_gauge(name: str, delta: float):
    with _lock:
        _gauges[name] += delta


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(stage: str, error_type: str, message: str, item_id: str = ""):
    with _lock:
        _errors.append({
            "timestamp": time.time(),
            "stage": stage,
            "error_type": error_type,
            "item_id": item_id,
            "message": message[:300],
        })


def reset():
    """Clear everything. Used by tests."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency.clear()
        _errors.clear()


def _summarize(samples) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "count": n,
        "avg": sum(ordered) / n,
        "p50": ordered[n // 2],
        "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
        "max": ordered[-1],
    }


def get_snapshot() -> dict:
    """Point-in-time copy of every metric, shaped for the /metrics endpoint."""
    with _lock:
        started = _counters["items.started"]
        failed = _counters["items.failed"]
        start_time = _gauges.get("start_time")
        return {
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": {stage: _summarize(s) for stage, s in _latency.items() if s},
            "item_failure_rate": round(failed / started, 4) if started else 0.0,
            "error_patterns": dict(Counter(f"{e['stage']}:{e['error_type']}" for e in _errors)),
            "recent_errors": list(_errors)[-RECENT_ERRORS_SHOWN:],
            "uptime_seconds": time.time() - start_time if start_time else 0,
        }
