"""Process-local counters exposed on the health endpoint.

Everything runs on one event loop, so the dicts are updated without locks.
"""

import time
from collections import Counter
from typing import Any

_started = time.monotonic()

_jobs: Counter[str] = Counter()
_documents: Counter[str] = Counter()
_handlers: dict[str, dict[str, Any]] = {}
_activities: dict[str, Counter[str]] = {}


def record_handler_invocation(handler_name: str, duration_ms: float, success: bool) -> None:
    stats = _handlers.setdefault(
        handler_name,
        {"invocations": 0, "successes": 0, "failures": 0, "total_duration_ms": 0.0},
    )
    stats["invocations"] += 1
    stats["successes" if success else "failures"] += 1
    stats["total_duration_ms"] += duration_ms


def record_activity_attempt(activity_name: str, success: bool) -> None:
    stats = _activities.setdefault(activity_name, Counter())
    stats["attempts"] += 1
    stats["successes" if success else "failures"] += 1


def record_job_completed() -> None:
    _jobs["processed"] += 1


def record_job_failed() -> None:
    _jobs["failed"] += 1


def record_job_dead() -> None:
    _jobs["dead"] += 1


def record_documents_reconciled(count: int) -> None:
    _documents["reconciled"] += count


def get_metrics() -> dict[str, Any]:
    """Snapshot safe to serialize."""
    return {
        "uptime_seconds": round(time.monotonic() - _started, 1),
        "jobs_processed": _jobs["processed"],
        "jobs_failed": _jobs["failed"],
        "jobs_dead": _jobs["dead"],
        "documents_reconciled": _documents["reconciled"],
        "handlers": {name: dict(stats) for name, stats in _handlers.items()},
        "activities": {
            name: {
                "attempts": stats["attempts"],
                "successes": stats["successes"],
                "failures": stats["failures"],
            }
            for name, stats in _activities.items()
        },
    }
