from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    with _lock:
        _metrics[key] += amount


def record_job_completed(queue_name: str) -> None:
    _inc("jobs_completed")
    _inc(f"jobs_completed:{queue_name}")


def record_job_failed(queue_name: str) -> None:
    _inc("jobs_failed")
    _inc(f"jobs_failed:{queue_name}")


def record_job_dead(queue_name: str) -> None:
    _inc("jobs_dead")
    _inc(f"jobs_dead:{queue_name}")


def record_media_expired(count: int) -> None:
    _inc("media_expired", count)


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
