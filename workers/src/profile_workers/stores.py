"""psycopg adapters for profile versions, service preferences and the email index.

Creates use ``ON CONFLICT DO NOTHING`` and inspect the row count instead of
catching ``UniqueViolation``: a failed statement would abort the surrounding
transaction, and the migration dispatcher keeps going after a duplicate.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json
from pydantic import ValidationError

from .errors import ProfileQueryError, StoreConflictError
from .models import (
    ActivityFailure,
    ActivitySuccess,
    Profile,
    ProfileEmail,
    ServicePreference,
    activity_outcome_adapter,
)

logger = logging.getLogger(__name__)


class ProfileStore(Protocol):
    async def find_latest(self, fiscal_code: str) -> Profile | None: ...

    async def find_version(self, fiscal_code: str, version: int) -> Profile | None: ...

    async def create(self, profile: Profile) -> Profile: ...


class ServicePreferenceStore(Protocol):
    async def create(self, preference: ServicePreference) -> ServicePreference: ...


class ProfileEmailStore(Protocol):
    async def insert(self, profile_email: ProfileEmail) -> None: ...

    async def delete(self, profile_email: ProfileEmail) -> bool: ...


class SagaHistoryStore(Protocol):
    async def load(self, saga_id: str) -> dict[int, tuple[str, ActivitySuccess]]: ...

    async def record(
        self, saga_id: str, step_index: int, activity: str, outcome: ActivitySuccess
    ) -> None: ...

    async def clear(self, saga_id: str) -> None: ...


def _decode_profile(row: dict[str, Any]) -> Profile:
    try:
        return Profile.model_validate(row["document"])
    except ValidationError as exc:
        raise ProfileQueryError(
            f"Stored profile {row['fiscal_code']}@{row['version']} does not decode", exc
        ) from exc


class PostgresProfileStore:
    """Append-only versioned profile documents. Latest = highest version."""

    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn

    async def find_latest(self, fiscal_code: str) -> Profile | None:
        try:
            async with self.conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT fiscal_code, version, document
                    FROM profiles
                    WHERE fiscal_code = %s
                    ORDER BY version DESC
                    LIMIT 1
                    """,
                    (fiscal_code,),
                )
                row = await cur.fetchone()
        except psycopg.Error as exc:
            raise ProfileQueryError("Error trying to retrieve existing profile", exc) from exc
        return _decode_profile(row) if row else None

    async def find_version(self, fiscal_code: str, version: int) -> Profile | None:
        try:
            async with self.conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT fiscal_code, version, document
                    FROM profiles
                    WHERE fiscal_code = %s AND version = %s
                    """,
                    (fiscal_code, version),
                )
                row = await cur.fetchone()
        except psycopg.Error as exc:
            raise ProfileQueryError(
                f"Error trying to retrieve profile version {version}", exc
            ) from exc
        return _decode_profile(row) if row else None

    async def create(self, profile: Profile) -> Profile:
        try:
            async with self.conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO profiles (fiscal_code, version, document)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (fiscal_code, version) DO NOTHING
                    """,
                    (profile.fiscal_code, profile.version, Json(profile.to_document())),
                )
                inserted = cur.rowcount
        except psycopg.Error as exc:
            raise ProfileQueryError("Error while persisting the profile", exc) from exc
        if inserted == 0:
            raise StoreConflictError(
                f"Profile {profile.fiscal_code} already has version {profile.version}"
            )
        return profile


class PostgresServicePreferenceStore:
    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn

    async def create(self, preference: ServicePreference) -> ServicePreference:
        async with self.conn.cursor() as cur:
            await cur.execute(
                """
                INSERT INTO service_preferences (
                    fiscal_code, service_id, settings_version,
                    is_email_enabled, is_inbox_enabled, is_webhook_enabled
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (fiscal_code, service_id, settings_version) DO NOTHING
                """,
                (
                    preference.fiscal_code,
                    preference.service_id,
                    preference.settings_version,
                    preference.is_email_enabled,
                    preference.is_inbox_enabled,
                    preference.is_webhook_enabled,
                ),
            )
            if cur.rowcount == 0:
                raise StoreConflictError(
                    f"Service preference {preference.document_id} already exists"
                )
        return preference


class PostgresProfileEmailStore:
    """The validated-email index: one row per (fiscal code, validated email).

    Each write runs in its own savepoint so one failed document does not
    abort the change-feed transaction it is part of.
    """

    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn

    async def insert(self, profile_email: ProfileEmail) -> None:
        async with self.conn.transaction():
            await self.conn.execute(
                """
                INSERT INTO profile_emails (fiscal_code, email)
                VALUES (%s, %s)
                ON CONFLICT (fiscal_code, email) DO NOTHING
                """,
                (profile_email.fiscal_code, profile_email.email),
            )

    async def delete(self, profile_email: ProfileEmail) -> bool:
        async with self.conn.transaction():
            async with self.conn.cursor() as cur:
                await cur.execute(
                    "DELETE FROM profile_emails WHERE fiscal_code = %s AND email = %s",
                    (profile_email.fiscal_code, profile_email.email),
                )
                return cur.rowcount > 0


class PostgresSagaHistoryStore:
    """Completed saga steps, replayed instead of re-invoked on a saga retry.

    Step values can hold secrets (the token validator), so rows only live
    while the saga can still be retried. ``clear`` runs in the caller's
    transaction, next to the job's final status update.
    """

    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self.conn = conn

    async def load(self, saga_id: str) -> dict[int, tuple[str, ActivitySuccess]]:
        async with self.conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT step_index, activity, outcome
                FROM saga_steps
                WHERE saga_id = %s
                ORDER BY step_index
                """,
                (saga_id,),
            )
            rows = await cur.fetchall()

        history: dict[int, tuple[str, ActivitySuccess]] = {}
        for row in rows:
            outcome = activity_outcome_adapter.validate_python(row["outcome"])
            if isinstance(outcome, ActivityFailure):
                continue
            history[row["step_index"]] = (row["activity"], outcome)
        return history

    async def record(
        self, saga_id: str, step_index: int, activity: str, outcome: ActivitySuccess
    ) -> None:
        async with self.conn.transaction():
            await self.conn.execute(
                """
                INSERT INTO saga_steps (saga_id, step_index, activity, outcome)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (saga_id, step_index) DO NOTHING
                """,
                (saga_id, step_index, activity, Json(outcome.model_dump(mode="json"))),
            )

    async def clear(self, saga_id: str) -> None:
        await self.conn.execute("DELETE FROM saga_steps WHERE saga_id = %s", (saga_id,))
