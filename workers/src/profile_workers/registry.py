import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import psycopg

from .config import Config
from .models import ActivityFailure, ActivitySuccess

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobContext:
    """What the worker hands to every workflow handler and activity."""

    conn: psycopg.AsyncConnection[Any]
    config: Config


# Handler signature: async def handler(ctx: JobContext, payload: dict) -> None
HandlerFn = Callable[[JobContext, dict[str, Any]], Awaitable[None]]

# Activity signature: async def activity(ctx: JobContext, payload: dict) -> outcome
ActivityFn = Callable[
    [JobContext, dict[str, Any]], Awaitable[ActivitySuccess | ActivityFailure]
]


@dataclass(frozen=True)
class RegisteredHandler:
    fn: HandlerFn
    # Transactional handlers run inside one transaction together with the job
    # completion. Sagas commit step by step so recorded steps survive retries.
    transactional: bool = True


# Job-level registry: one handler per job_type (workflow name)
_registry: dict[str, RegisteredHandler] = {}

# Activity registry: one function per activity name
_activities: dict[str, ActivityFn] = {}


def register(
    job_type: str, *, transactional: bool = True
) -> Callable[[HandlerFn], HandlerFn]:
    """Register a handler for a job_type (e.g. 'profile.upserted')."""

    def decorator(fn: HandlerFn) -> HandlerFn:
        if job_type in _registry:
            raise ValueError(f"Duplicate handler for job_type={job_type!r}")
        _registry[job_type] = RegisteredHandler(fn=fn, transactional=transactional)
        logger.info("Registered handler for job_type=%s", job_type)
        return fn

    return decorator


def activity(name: str) -> Callable[[ActivityFn], ActivityFn]:
    """Register an activity callable from a saga step."""

    def decorator(fn: ActivityFn) -> ActivityFn:
        if name in _activities:
            raise ValueError(f"Duplicate activity name={name!r}")
        _activities[name] = fn
        logger.info("Registered activity %s", name)
        return fn

    return decorator


def get_handler(job_type: str) -> RegisteredHandler | None:
    return _registry.get(job_type)


def get_activity(name: str) -> ActivityFn | None:
    return _activities.get(name)


def registered_types() -> list[str]:
    return list(_registry.keys())


def registered_activities() -> list[str]:
    return list(_activities.keys())
