"""Unit tests for job dispatch, retry backoff and dead-lettering in the worker."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import psycopg
import pytest

from profile_workers import registry
from profile_workers import worker as worker_module
from profile_workers.config import Config
from profile_workers.registry import RegisteredHandler
from profile_workers.worker import Worker, claim_jobs, retry_backoff_seconds


class _FakeTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class _FakeCursor:
    def __init__(self, rows=None):
        self.execute = AsyncMock()
        self.fetchall = AsyncMock(return_value=rows or [])

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def _make_mock_conn(idle=True):
    conn = AsyncMock()
    conn.transaction = MagicMock(side_effect=lambda: _FakeTransaction())
    conn.execute = AsyncMock()
    conn.info = MagicMock()
    conn.info.transaction_status = (
        psycopg.pq.TransactionStatus.IDLE if idle else psycopg.pq.TransactionStatus.INERROR
    )
    return conn


@pytest.fixture
def mock_conn():
    return _make_mock_conn()


@pytest.fixture
def worker():
    return Worker(Config(database_url="postgresql://localhost/profiles_test"))


def _job(job_type="test.job", attempt=1, max_retries=3):
    return {
        "id": 7,
        "job_type": job_type,
        "payload": {"instance_id": "i-1", "input": {}},
        "attempt": attempt,
        "max_retries": max_retries,
    }


def _install(monkeypatch, job_type, fn, transactional=True):
    monkeypatch.setitem(
        registry._registry, job_type, RegisteredHandler(fn=fn, transactional=transactional)
    )


def _status_updates(conn):
    statements = [c.args[0] for c in conn.execute.call_args_list]
    return [s for s in statements if "UPDATE background_jobs" in s]


def test_backoff_doubles_per_attempt():
    assert [retry_backoff_seconds(n) for n in (1, 2, 3)] == [2, 4, 8]


@pytest.mark.asyncio
async def test_claim_returns_claimed_rows(mock_conn):
    rows = [_job()]
    cursor = _FakeCursor(rows)
    mock_conn.cursor = MagicMock(return_value=cursor)

    assert await claim_jobs(mock_conn, 25) == rows

    sql, params = cursor.execute.call_args.args
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert params == (25,)


class TestProcessJob:
    @pytest.mark.asyncio
    async def test_transactional_handler_completes_in_same_transaction(
        self, monkeypatch, worker, mock_conn
    ):
        handler = AsyncMock()
        _install(monkeypatch, "test.job", handler)

        await worker._process_job(mock_conn, _job())

        ctx, payload = handler.call_args.args
        assert ctx.conn is mock_conn
        assert ctx.config is worker.config
        assert payload == {"instance_id": "i-1", "input": {}}
        assert mock_conn.transaction.call_count == 1
        [update] = _status_updates(mock_conn)
        assert "status = 'completed'" in update
        mock_conn.set_autocommit.assert_not_called()

    @pytest.mark.asyncio
    async def test_saga_handler_runs_in_autocommit(self, monkeypatch, worker, mock_conn):
        seen = []

        async def handler(ctx, payload):
            seen.append(mock_conn.set_autocommit.call_args.args)

        _install(monkeypatch, "test.saga", handler, transactional=False)

        await worker._process_job(mock_conn, _job("test.saga"))

        assert seen == [(True,)]
        assert mock_conn.set_autocommit.call_args_list[-1].args == (False,)
        [update] = _status_updates(mock_conn)
        assert "status = 'completed'" in update

    @pytest.mark.asyncio
    async def test_autocommit_restored_when_saga_raises(self, monkeypatch, worker, mock_conn):
        _install(
            monkeypatch,
            "test.saga",
            AsyncMock(side_effect=RuntimeError("step failed")),
            transactional=False,
        )

        await worker._process_job(mock_conn, _job("test.saga"))

        assert mock_conn.set_autocommit.call_args_list[-1].args == (False,)

    @pytest.mark.asyncio
    async def test_failure_below_max_retries_reschedules(self, monkeypatch, worker, mock_conn):
        _install(monkeypatch, "test.job", AsyncMock(side_effect=RuntimeError("boom")))

        await worker._process_job(mock_conn, _job(attempt=2, max_retries=3))

        sql, params = mock_conn.execute.call_args.args
        assert "status = 'pending'" in sql
        assert params == ("boom", 4.0, 7)
        mock_conn.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_failure_at_max_retries_is_dead(self, monkeypatch, worker, mock_conn):
        _install(monkeypatch, "test.job", AsyncMock(side_effect=RuntimeError("boom")))

        await worker._process_job(mock_conn, _job(attempt=3, max_retries=3))

        sql, params = mock_conn.execute.call_args.args
        assert "status = 'dead'" in sql
        assert params == ("boom", 7)

    @pytest.mark.asyncio
    async def test_failed_transaction_is_rolled_back(self, monkeypatch, worker):
        conn = _make_mock_conn(idle=False)
        _install(monkeypatch, "test.job", AsyncMock(side_effect=RuntimeError("boom")))

        await worker._process_job(conn, _job())

        conn.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_job_type_is_dead_immediately(self, worker, mock_conn):
        await worker._process_job(mock_conn, _job("test.unregistered"))

        sql, params = mock_conn.execute.call_args.args
        assert "status = 'dead'" in sql
        assert params == ("No handler for job_type=test.unregistered", 7)

    @pytest.mark.asyncio
    async def test_completed_saga_forgets_recorded_steps(self, monkeypatch, worker, mock_conn):
        _install(monkeypatch, "test.saga", AsyncMock(), transactional=False)

        await worker._process_job(mock_conn, _job("test.saga"))

        statements = [(c.args[0], c.args[1]) for c in mock_conn.execute.call_args_list]
        delete_at = next(
            i for i, (sql, _) in enumerate(statements) if "DELETE FROM saga_steps" in sql
        )
        complete_at = next(
            i for i, (sql, _) in enumerate(statements) if "status = 'completed'" in sql
        )
        assert statements[delete_at][1] == ("i-1",)
        assert delete_at < complete_at

    @pytest.mark.asyncio
    async def test_dead_saga_forgets_recorded_steps(self, monkeypatch, worker, mock_conn):
        _install(
            monkeypatch,
            "test.saga",
            AsyncMock(side_effect=RuntimeError("step failed")),
            transactional=False,
        )

        await worker._process_job(mock_conn, _job("test.saga", attempt=3, max_retries=3))

        statements = [c.args[0] for c in mock_conn.execute.call_args_list]
        assert any("DELETE FROM saga_steps" in sql for sql in statements)
        assert "status = 'dead'" in statements[-1]

    @pytest.mark.asyncio
    async def test_retried_saga_keeps_recorded_steps(self, monkeypatch, worker, mock_conn):
        _install(
            monkeypatch,
            "test.saga",
            AsyncMock(side_effect=RuntimeError("step failed")),
            transactional=False,
        )

        await worker._process_job(mock_conn, _job("test.saga", attempt=1, max_retries=3))

        statements = [c.args[0] for c in mock_conn.execute.call_args_list]
        assert not any("DELETE FROM saga_steps" in sql for sql in statements)


class TestRunDueJobs:
    @pytest.mark.asyncio
    async def test_claimed_jobs_run_concurrently(self, monkeypatch, worker):
        conn = _make_mock_conn()
        conn.__aenter__.return_value = conn
        monkeypatch.setattr(
            worker_module.psycopg.AsyncConnection, "connect", AsyncMock(return_value=conn)
        )
        monkeypatch.setattr(
            worker_module,
            "claim_jobs",
            AsyncMock(
                return_value=[
                    {**_job("test.slow"), "id": 1},
                    {**_job("test.fast"), "id": 2},
                ]
            ),
        )
        released = asyncio.Event()

        async def slow(ctx, payload):
            # Only finishes once the second job of the batch has run.
            await released.wait()

        async def fast(ctx, payload):
            released.set()

        _install(monkeypatch, "test.slow", slow)
        _install(monkeypatch, "test.fast", fast)

        await asyncio.wait_for(worker.run_due_jobs(), timeout=1)

        completed = [
            c.args[1] for c in conn.execute.call_args_list if "status = 'completed'" in c.args[0]
        ]
        assert sorted(completed) == [(1,), (2,)]

    @pytest.mark.asyncio
    async def test_claim_failure_runs_nothing(self, monkeypatch, worker):
        monkeypatch.setattr(
            worker_module.psycopg.AsyncConnection,
            "connect",
            AsyncMock(side_effect=psycopg.OperationalError("down")),
        )
        handler = AsyncMock()
        _install(monkeypatch, "test.job", handler)

        await worker.run_due_jobs()

        handler.assert_not_awaited()
