"""Workflow host for profile jobs.

Started workflows are rows in ``background_jobs``. The worker wakes on
``NOTIFY profile_jobs`` (or a poll tick), claims due rows with
``FOR UPDATE SKIP LOCKED`` and runs the registered handler. A handler that
raises is rescheduled with ``2**attempt`` seconds of backoff until the row's
``max_retries`` is reached; the job is then dead.
"""

import asyncio
import logging
import signal
import time
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .change_feed import ChangeFeedWatcher
from .config import Config
from .metrics import (
    record_handler_invocation,
    record_job_completed,
    record_job_dead,
    record_job_failed,
)
from .registry import JobContext, RegisteredHandler, get_handler
from .schema import ensure_schema
from .stores import PostgresSagaHistoryStore
from .workflows import JOBS_CHANNEL

logger = logging.getLogger(__name__)

LISTEN_RECONNECT_SECONDS = 5

_CLAIM_SQL = """
    UPDATE background_jobs
    SET status = 'processing', started_at = NOW(), attempt = attempt + 1
    WHERE id IN (
        SELECT id FROM background_jobs
        WHERE status = 'pending' AND scheduled_for <= NOW()
        ORDER BY scheduled_for, priority DESC, id
        LIMIT %s
        FOR UPDATE SKIP LOCKED
    )
    RETURNING id, job_type, payload, attempt, max_retries
"""

_COMPLETE_SQL = """
    UPDATE background_jobs
    SET status = 'completed', completed_at = NOW()
    WHERE id = %s
"""

_DEAD_SQL = """
    UPDATE background_jobs
    SET status = 'dead', error_message = %s, completed_at = NOW()
    WHERE id = %s
"""

_RESCHEDULE_SQL = """
    UPDATE background_jobs
    SET status = 'pending',
        error_message = %s,
        scheduled_for = NOW() + make_interval(secs => %s)
    WHERE id = %s
"""


def retry_backoff_seconds(attempt: int) -> int:
    return 2**attempt


async def claim_jobs(conn: psycopg.AsyncConnection[Any], batch_size: int) -> list[dict[str, Any]]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(_CLAIM_SQL, (batch_size,))
        return await cur.fetchall()


async def complete_job(conn: psycopg.AsyncConnection[Any], job_id: int) -> None:
    await conn.execute(_COMPLETE_SQL, (job_id,))


async def forget_saga_steps(conn: psycopg.AsyncConnection[Any], job: dict[str, Any]) -> None:
    """Drop the recorded steps of a saga job that will not run again."""
    instance_id = job["payload"].get("instance_id")
    if instance_id:
        await PostgresSagaHistoryStore(conn).clear(str(instance_id))


async def bury_job(conn: psycopg.AsyncConnection[Any], job_id: int, error: str) -> None:
    await conn.execute(_DEAD_SQL, (error, job_id))
    await conn.commit()


async def reschedule_job(
    conn: psycopg.AsyncConnection[Any], job_id: int, attempt: int, error: str
) -> None:
    delay = retry_backoff_seconds(attempt)
    logger.info("Job %d retrying in %ds (attempt=%d)", job_id, delay, attempt)
    await conn.execute(_RESCHEDULE_SQL, (error, float(delay), job_id))
    await conn.commit()


class Worker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._shutdown = asyncio.Event()
        self._change_feed = ChangeFeedWatcher(config)
        self._runs: set[asyncio.Task[None]] = set()

    async def run(self) -> None:
        """Bootstrap the schema, then run the job loops and the change feed."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown.set)

        logger.info(
            "Worker starting (poll_interval=%.1fs, batch_size=%d)",
            self.config.poll_interval_seconds,
            self.config.batch_size,
        )

        async with await psycopg.AsyncConnection.connect(self.config.database_url) as conn:
            await ensure_schema(conn)

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._listen())
            tg.create_task(self._poll())
            tg.create_task(self._change_feed.run(self._shutdown))
        if self._runs:
            await asyncio.gather(*self._runs)
        logger.info("Worker stopped")

    async def _listen(self) -> None:
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.listen_database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {JOBS_CHANNEL}")
                    logger.info("Listening on %s", JOBS_CHANNEL)
                    await self._drain_notifications(conn)
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                logger.warning(
                    "LISTEN connection lost, reconnecting in %ds", LISTEN_RECONNECT_SECONDS
                )
                await asyncio.sleep(LISTEN_RECONNECT_SECONDS)

    async def _drain_notifications(self, conn: psycopg.AsyncConnection[Any]) -> None:
        # notifies() ends on timeout; the connection stays open until it drops.
        while not self._shutdown.is_set():
            async for notify in conn.notifies(timeout=self.config.poll_interval_seconds):
                logger.debug("Workflow started: %s", notify.payload)
                self.schedule_run()
                if self._shutdown.is_set():
                    return

    def schedule_run(self) -> asyncio.Task[None]:
        """Run due jobs in the background so LISTEN keeps draining."""
        task = asyncio.create_task(self.run_due_jobs())
        self._runs.add(task)
        task.add_done_callback(self._runs.discard)
        return task

    async def _poll(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown.wait(), timeout=self.config.poll_interval_seconds
                )
            except TimeoutError:
                await self.run_due_jobs()

    async def run_due_jobs(self) -> None:
        try:
            async with await psycopg.AsyncConnection.connect(self.config.database_url) as conn:
                jobs = await claim_jobs(conn, self.config.batch_size)
                # Claims survive a crash mid-batch.
                await conn.commit()
        except Exception:
            logger.exception("Error while claiming due jobs")
            return

        # One task and one connection per job: a saga sleeping between
        # activity attempts must not hold up the rest of the batch.
        async with asyncio.TaskGroup() as tg:
            for job in jobs:
                tg.create_task(self._run_claimed_job(job))

    async def _run_claimed_job(self, job: dict[str, Any]) -> None:
        try:
            async with await psycopg.AsyncConnection.connect(self.config.database_url) as conn:
                await self._process_job(conn, job)
        except Exception:
            logger.exception("Error while running job %d", job["id"])

    async def _run_handler(
        self,
        conn: psycopg.AsyncConnection[Any],
        registered: RegisteredHandler,
        ctx: JobContext,
        job: dict[str, Any],
    ) -> None:
        if registered.transactional:
            async with conn.transaction():
                await registered.fn(ctx, job["payload"])
                await complete_job(conn, job["id"])
            return

        # Each saga step commits on its own.
        await conn.set_autocommit(True)
        try:
            await registered.fn(ctx, job["payload"])
        finally:
            await conn.set_autocommit(False)
        async with conn.transaction():
            await forget_saga_steps(conn, job)
            await complete_job(conn, job["id"])

    async def _process_job(self, conn: psycopg.AsyncConnection[Any], job: dict[str, Any]) -> None:
        job_id, job_type = job["id"], job["job_type"]
        log_extra = {"profile_job_type": job_type, "profile_job_id": job_id}

        registered = get_handler(job_type)
        if registered is None:
            logger.warning("No handler for job_type=%s", job_type, extra=log_extra)
            await bury_job(conn, job_id, f"No handler for job_type={job_type}")
            return

        started = time.monotonic()
        try:
            await self._run_handler(conn, registered, JobContext(conn=conn, config=self.config), job)
        except Exception as exc:
            record_handler_invocation(job_type, (time.monotonic() - started) * 1000, success=False)
            logger.exception("Job %d failed", job_id, extra=log_extra)
            if conn.info.transaction_status != psycopg.pq.TransactionStatus.IDLE:
                await conn.rollback()

            if job["attempt"] >= job["max_retries"]:
                record_job_dead()
                logger.error(
                    "Job %d is dead after %d attempts: %s",
                    job_id,
                    job["attempt"],
                    exc,
                    extra=log_extra,
                )
                if not registered.transactional:
                    await forget_saga_steps(conn, job)
                await bury_job(conn, job_id, str(exc))
            else:
                record_job_failed()
                await reschedule_job(conn, job_id, job["attempt"], str(exc))
            return

        record_handler_invocation(job_type, (time.monotonic() - started) * 1000, success=True)
        record_job_completed()
        logger.info("Job %d completed", job_id, extra=log_extra)
