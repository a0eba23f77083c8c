"""Retry saga: chain long-running activities with two retry layers.

Each step calls one activity through ``call_activity_with_retry``, which
retries raised exceptions with exponential backoff and only reports a
terminal outcome. A FAILURE outcome makes the saga raise
``ActivityFailureError``; the worker then retries the whole saga as a job
(``max_retries`` on the ``background_jobs`` row) and finally marks it dead.

Steps that already succeeded are recorded per saga instance. When the host
re-runs a saga, recorded steps return their stored value without calling the
activity again, so every step reaches the outside world once per success.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .config import Config
from .errors import ActivityFailureError
from .metrics import record_activity_attempt
from .models import ActivityFailure, ActivitySuccess, activity_outcome_adapter
from .registry import JobContext, get_activity
from .stores import SagaHistoryStore

logger = logging.getLogger(__name__)

PENDING = "PENDING"
SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"

SleepFn = Callable[[float], Awaitable[None]]


def running_state(step_index: int) -> str:
    return f"STEP_{step_index}_RUNNING"


@dataclass(frozen=True)
class RetryPolicy:
    first_retry_interval_ms: int
    max_number_of_attempts: int
    backoff_coefficient: float = 1.0
    max_retry_interval_ms: int | None = None

    def __post_init__(self) -> None:
        if self.first_retry_interval_ms <= 0:
            raise ValueError("first_retry_interval_ms must be positive")
        if self.max_number_of_attempts < 1:
            raise ValueError("max_number_of_attempts must be at least 1")
        if self.backoff_coefficient < 1.0:
            raise ValueError("backoff_coefficient must be >= 1")

    @classmethod
    def from_config(cls, config: Config) -> "RetryPolicy":
        return cls(
            first_retry_interval_ms=config.activity_first_retry_ms,
            max_number_of_attempts=config.activity_max_attempts,
            backoff_coefficient=config.activity_backoff_coefficient,
        )

    def delay_seconds(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        delay_ms = self.first_retry_interval_ms * self.backoff_coefficient ** (attempt - 1)
        if self.max_retry_interval_ms is not None:
            delay_ms = min(delay_ms, self.max_retry_interval_ms)
        return delay_ms / 1000


async def call_activity_with_retry(
    ctx: JobContext,
    name: str,
    policy: RetryPolicy,
    payload: dict[str, Any],
    *,
    sleep: SleepFn = asyncio.sleep,
) -> ActivitySuccess | ActivityFailure:
    """Run activity ``name`` until it returns or the retry budget is spent.

    A returned outcome, SUCCESS or FAILURE, is terminal. A raised exception
    is retried. When attempts run out the last error becomes a FAILURE
    outcome.
    """
    fn = get_activity(name)
    if fn is None:
        return ActivityFailure(reason=f"No activity registered with name={name}")

    last_error: BaseException | None = None
    for attempt in range(1, policy.max_number_of_attempts + 1):
        try:
            async with ctx.conn.transaction():
                raw = await fn(ctx, payload)
        except Exception as exc:
            record_activity_attempt(name, success=False)
            last_error = exc
            if attempt == policy.max_number_of_attempts:
                break
            delay = policy.delay_seconds(attempt)
            logger.warning(
                "Activity %s attempt %d/%d failed, retrying in %.1fs: %s",
                name,
                attempt,
                policy.max_number_of_attempts,
                delay,
                exc,
            )
            await sleep(delay)
            continue

        try:
            outcome = activity_outcome_adapter.validate_python(
                raw.model_dump() if hasattr(raw, "model_dump") else raw
            )
        except ValidationError as exc:
            # A malformed result will not improve on retry.
            record_activity_attempt(name, success=False)
            return ActivityFailure(reason=f"Error decoding activity result: {exc}")

        record_activity_attempt(name, success=isinstance(outcome, ActivitySuccess))
        return outcome

    logger.error(
        "Activity %s exhausted %d attempts: %s",
        name,
        policy.max_number_of_attempts,
        last_error,
    )
    return ActivityFailure(reason=f"Max retry exceeded: {last_error}")


CallActivityFn = Callable[
    [JobContext, str, RetryPolicy, dict[str, Any]],
    Awaitable[ActivitySuccess | ActivityFailure],
]


class Saga:
    """One saga instance: PENDING -> STEP_n_RUNNING ... -> SUCCEEDED | FAILED."""

    def __init__(
        self,
        saga_id: str,
        ctx: JobContext,
        policy: RetryPolicy,
        *,
        history: SagaHistoryStore | None = None,
        call_activity: CallActivityFn = call_activity_with_retry,
    ) -> None:
        self.saga_id = saga_id
        self.ctx = ctx
        self.policy = policy
        self.history = history
        self.call_activity = call_activity
        self.state = PENDING
        self._step_index = 0
        self._recorded: dict[int, tuple[str, ActivitySuccess]] | None = None

    async def _load_history(self) -> dict[int, tuple[str, ActivitySuccess]]:
        if self._recorded is None:
            self._recorded = await self.history.load(self.saga_id) if self.history else {}
        return self._recorded

    async def step(self, activity: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Run the next step and return its SUCCESS value."""
        if self.state in (SUCCEEDED, FAILED):
            raise RuntimeError(f"Saga {self.saga_id} already finished ({self.state})")

        self._step_index += 1
        index = self._step_index
        self.state = running_state(index)

        recorded = (await self._load_history()).get(index)
        if recorded is not None:
            recorded_activity, outcome = recorded
            if recorded_activity != activity:
                raise RuntimeError(
                    f"Saga {self.saga_id} replay mismatch at step {index}: "
                    f"recorded {recorded_activity}, requested {activity}"
                )
            logger.info("Saga %s step %d (%s) replayed", self.saga_id, index, activity)
            return outcome.value

        logger.info("Saga %s step %d (%s) starting", self.saga_id, index, activity)
        outcome = await self.call_activity(self.ctx, activity, self.policy, payload)

        if isinstance(outcome, ActivityFailure):
            self.state = FAILED
            logger.error(
                "Saga %s step %d (%s) failed: %s", self.saga_id, index, activity, outcome.reason
            )
            raise ActivityFailureError(activity, outcome.reason)

        if self.history is not None:
            await self.history.record(self.saga_id, index, activity, outcome)
        return outcome.value

    def succeed(self) -> None:
        self.state = SUCCEEDED
        logger.info("Saga %s succeeded after %d steps", self.saga_id, self._step_index)
