"""Idempotent table bootstrap, run once on worker startup."""

from __future__ import annotations

import logging
from typing import Any

import psycopg

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS profiles (
        seq BIGSERIAL UNIQUE,
        fiscal_code TEXT NOT NULL,
        version INTEGER NOT NULL CHECK (version >= 0),
        document JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (fiscal_code, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS service_preferences (
        fiscal_code TEXT NOT NULL,
        service_id TEXT NOT NULL,
        settings_version INTEGER NOT NULL CHECK (settings_version >= 0),
        is_email_enabled BOOLEAN NOT NULL,
        is_inbox_enabled BOOLEAN NOT NULL,
        is_webhook_enabled BOOLEAN NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (fiscal_code, service_id, settings_version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS profile_emails (
        fiscal_code TEXT NOT NULL,
        email TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (fiscal_code, email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS validation_tokens (
        id UUID PRIMARY KEY,
        fiscal_code TEXT NOT NULL,
        email TEXT NOT NULL,
        validator_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_outbox (
        id UUID PRIMARY KEY,
        recipient TEXT NOT NULL,
        subject TEXT NOT NULL,
        body TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS saga_steps (
        saga_id TEXT NOT NULL,
        step_index INTEGER NOT NULL,
        activity TEXT NOT NULL,
        outcome JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (saga_id, step_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS change_feed_leases (
        name TEXT PRIMARY KEY,
        last_seq BIGINT NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS background_jobs (
        id BIGSERIAL PRIMARY KEY,
        job_type TEXT NOT NULL,
        payload JSONB NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        priority INTEGER NOT NULL DEFAULT 0,
        attempt INTEGER NOT NULL DEFAULT 0,
        max_retries INTEGER NOT NULL DEFAULT 3,
        scheduled_for TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        error_message TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS background_jobs_pending_idx
        ON background_jobs (scheduled_for, priority DESC, id)
        WHERE status = 'pending'
    """,
)


async def ensure_schema(conn: psycopg.AsyncConnection[Any]) -> None:
    """Create missing tables. Safe to call on every start."""
    for statement in SCHEMA_STATEMENTS:
        await conn.execute(statement)
    await conn.commit()
    logger.info("Schema ensured (%d statements)", len(SCHEMA_STATEMENTS))
