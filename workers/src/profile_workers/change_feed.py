"""Change feed over new profile versions.

Profiles are append-only, so ``profiles.seq`` orders every created version.
The watcher reads past its lease, hands the batch to the validated-email
reconciler and advances the lease. Reconciliation is best-effort: a failed
document is logged and the lease still moves on.

``seq`` is drawn at INSERT time, not at commit, so a slow transaction can
commit a lower ``seq`` after a higher one is already visible. The watcher
only reads a gap-free run past its lease. A gap is skipped once the row
after it is older than the grace window, since by then the missing value
belongs to a rolled-back insert.
"""

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .config import Config
from .metrics import record_documents_reconciled
from .stores import PostgresProfileEmailStore, PostgresProfileStore
from .validated_email import handle_profile_documents

logger = logging.getLogger(__name__)

LEASE_NAME = "profile_emails"


async def read_lease(conn: psycopg.AsyncConnection[Any], name: str = LEASE_NAME) -> int:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO change_feed_leases (name, last_seq)
            VALUES (%s, 0)
            ON CONFLICT (name) DO NOTHING
            """,
            (name,),
        )
        await cur.execute(
            "SELECT last_seq FROM change_feed_leases WHERE name = %s FOR UPDATE",
            (name,),
        )
        row = await cur.fetchone()
    return int(row["last_seq"]) if row else 0


async def advance_lease(
    conn: psycopg.AsyncConnection[Any], last_seq: int, name: str = LEASE_NAME
) -> None:
    await conn.execute(
        """
        UPDATE change_feed_leases
        SET last_seq = GREATEST(last_seq, %s), updated_at = NOW()
        WHERE name = %s
        """,
        (last_seq, name),
    )


async def fetch_changes(
    conn: psycopg.AsyncConnection[Any], after_seq: int, limit: int, grace_seconds: float
) -> list[dict[str, Any]]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT seq, document,
                   created_at < NOW() - make_interval(secs => %s) AS settled
            FROM profiles
            WHERE seq > %s
            ORDER BY seq
            LIMIT %s
            """,
            (grace_seconds, after_seq, limit),
        )
        return await cur.fetchall()


def readable_prefix(rows: Sequence[dict[str, Any]], after_seq: int) -> list[dict[str, Any]]:
    """Rows up to the first ``seq`` gap that may still be filled by a commit."""
    ready: list[dict[str, Any]] = []
    expected = after_seq + 1
    for row in rows:
        if row["seq"] != expected and not row["settled"]:
            break
        ready.append(row)
        expected = row["seq"] + 1
    return ready


class ChangeFeedWatcher:
    def __init__(self, config: Config) -> None:
        self.config = config

    async def run(self, shutdown: asyncio.Event) -> None:
        while not shutdown.is_set():
            try:
                processed = await self.process_batch()
            except Exception:
                logger.exception("Error in change feed batch")
                processed = 0

            if processed:
                continue  # drain the backlog before sleeping
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=self.config.poll_interval_seconds)
            except TimeoutError:
                pass

        logger.info("Change feed watcher stopped")

    async def process_batch(self) -> int:
        async with await psycopg.AsyncConnection.connect(self.config.database_url) as conn:
            return await process_changes(
                conn, self.config.batch_size, self.config.change_feed_grace_seconds
            )


async def process_changes(
    conn: psycopg.AsyncConnection[Any], batch_size: int, grace_seconds: float = 30.0
) -> int:
    """Reconcile one batch of changed documents. Returns how many were read."""
    async with conn.transaction():
        last_seq = await read_lease(conn)
        rows = readable_prefix(
            await fetch_changes(conn, last_seq, batch_size, grace_seconds), last_seq
        )
        if not rows:
            return 0

        await handle_profile_documents(
            (row["document"] for row in rows),
            profiles=PostgresProfileStore(conn),
            emails=PostgresProfileEmailStore(conn),
        )
        await advance_lease(conn, rows[-1]["seq"])

    record_documents_reconciled(len(rows))
    logger.debug("Change feed advanced to seq=%d (%d documents)", rows[-1]["seq"], len(rows))
    return len(rows)
