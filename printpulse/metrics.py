"""
Thread-safe in-memory metrics for the service.

Tracks:
  - Counters: adapter calls, stage outcomes, mockup variants
  - Latency: per adapter operation (last 100 samples)
  - Stage run durations and polls per finished video job
  - Gauges: start time, mockup batch position, video poll count
  - Recent errors (last 50) for diagnosis

GET /metrics also gets a "pipeline" section: per-stage outcome rates,
mockup variant hit rate, and video polling figures.

All data is ephemeral and resets on restart.
"""

import threading
import time
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)

_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

_stage_durations: Dict[str, List[float]] = defaultdict(list)

_video_polls: List[int] = []

_gauges: Dict[str, float] = defaultdict(float)

_recent_errors: List[dict] = []
MAX_ERRORS = 50

STAGE_OUTCOMES = ("succeeded", "failed", "cancelled")


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'generation.synthesize_mockup', 'stage.design.failed')."""
    with _lock:
        _counters[name] += amount


def _append_capped(samples: list, value):
    samples.append(value)
    if len(samples) > MAX_SAMPLES:
        del samples[:-MAX_SAMPLES]


def record_latency(operation: str, duration_ms: float):
    with _lock:
        _append_capped(_latency_samples[operation], duration_ms)


def record_stage_duration(stage: str, duration_s: float):
    """Wall time of one stage run, whatever its outcome."""
    with _lock:
        _append_capped(_stage_durations[stage], duration_s)


def record_video_polls(polls: int):
    """Polls a finished video job needed before it reported done."""
    with _lock:
        _append_capped(_video_polls, polls)


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(source: str, error_kind: str, message: str, epoch: str = ""):
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_kind": error_kind,
            "message": message[:300],
            "epoch": epoch,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def reset():
    """Drop all collected data."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _stage_durations.clear()
        _video_polls.clear()
        _gauges.clear()
        _recent_errors.clear()


def _rate(hits: int, total: int):
    return round(hits / total, 3) if total else None


def _pipeline_report() -> dict:
    """Caller holds _lock."""
    stages: Dict[str, dict] = {}
    for name, count in _counters.items():
        parts = name.split(".")
        if len(parts) == 3 and parts[0] == "stage" and parts[2] in STAGE_OUTCOMES:
            stages.setdefault(parts[1], {o: 0 for o in STAGE_OUTCOMES})[parts[2]] = count
    for stage, durations in _stage_durations.items():
        entry = stages.setdefault(stage, {o: 0 for o in STAGE_OUTCOMES})
        entry["avg_duration_s"] = round(sum(durations) / len(durations), 3)
    for entry in stages.values():
        entry["success_rate"] = _rate(entry["succeeded"], sum(entry[o] for o in STAGE_OUTCOMES))

    mockups_ok = _counters.get("mockups.variant.succeeded", 0)
    mockups_failed = _counters.get("mockups.variant.failed", 0)

    return {
        "stages": stages,
        "mockups": {
            "succeeded": mockups_ok,
            "failed": mockups_failed,
            "success_rate": _rate(mockups_ok, mockups_ok + mockups_failed),
            "current_batch_attempted": _gauges.get("mockups.attempted", 0),
        },
        "video": {
            "jobs_finished": len(_video_polls),
            "avg_polls": round(sum(_video_polls) / len(_video_polls), 2) if _video_polls else None,
            "max_polls": max(_video_polls) if _video_polls else None,
            "timeouts": _counters.get("video.timeout", 0),
            "current_job_polls": _gauges.get("video.polls", 0),
        },
        "generation_calls": {
            name.split(".", 1)[1]: count
            for name, count in _counters.items()
            if name.startswith("generation.")
        },
    }


def get_snapshot() -> dict:
    """Consistent read of everything collected, for GET /metrics."""
    now = time.time()

    with _lock:
        latency_stats = {}
        for operation, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[operation] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['source']}:{err['error_kind']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "pipeline": _pipeline_report(),
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }
