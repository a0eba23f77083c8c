"""Start workflows on the background job host.

A started workflow is a ``background_jobs`` row whose payload carries a fresh
instance id next to the encoded input. The worker LISTENs on ``profile_jobs``
and picks the row up immediately; the poll loop catches anything missed.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Protocol

import psycopg
from psycopg.types.json import Json
from pydantic import BaseModel

logger = logging.getLogger(__name__)

JOBS_CHANNEL = "profile_jobs"

PROFILE_UPSERTED = "profile.upserted"
MIGRATE_LEGACY_PREFERENCES = "preferences.migrate_legacy"
EMAIL_VALIDATION_PROCESS = "email_validation.process"


class WorkflowStarter(Protocol):
    async def start(self, name: str, workflow_input: BaseModel) -> str: ...


def build_job_payload(instance_id: str, workflow_input: BaseModel) -> dict[str, Any]:
    return {
        "instance_id": instance_id,
        "input": workflow_input.model_dump(mode="json"),
    }


class PostgresWorkflowClient:
    def __init__(self, conn: psycopg.AsyncConnection[Any], *, max_retries: int = 3) -> None:
        self.conn = conn
        self.max_retries = max_retries

    async def start(self, name: str, workflow_input: BaseModel) -> str:
        """Enqueue ``name`` with ``workflow_input``. Returns the instance id."""
        instance_id = str(uuid.uuid4())
        await self.conn.execute(
            """
            INSERT INTO background_jobs (job_type, payload, max_retries)
            VALUES (%s, %s, %s)
            """,
            (name, Json(build_job_payload(instance_id, workflow_input)), self.max_retries),
        )
        await self.conn.execute("SELECT pg_notify(%s, %s)", (JOBS_CHANNEL, name))
        logger.info("Started workflow %s (instance_id=%s)", name, instance_id)
        return instance_id
