"""Shared in-memory fakes for the profile stores and workflow starter."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import BaseModel

from profile_workers.config import Config
from profile_workers.errors import StoreConflictError
from profile_workers.models import (
    ActivitySuccess,
    Profile,
    ProfileEmail,
    ServicePreference,
)
from profile_workers.profile_service import ProfileService
from profile_workers.registry import JobContext

A_FISCAL_CODE = "AAAAAA00A00A000A"
ANOTHER_FISCAL_CODE = "BBBBBB11B11B111B"
FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class InMemoryProfileStore:
    def __init__(self) -> None:
        self.versions: dict[tuple[str, int], Profile] = {}
        self.created: list[Profile] = []
        self.create_error: Exception | None = None
        self.find_version_calls: list[tuple[str, int]] = []

    def add(self, profile: Profile) -> Profile:
        self.versions[(profile.fiscal_code, profile.version)] = profile
        return profile

    async def find_latest(self, fiscal_code: str) -> Profile | None:
        candidates = [p for (fc, _), p in self.versions.items() if fc == fiscal_code]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.version)

    async def find_version(self, fiscal_code: str, version: int) -> Profile | None:
        self.find_version_calls.append((fiscal_code, version))
        return self.versions.get((fiscal_code, version))

    async def create(self, profile: Profile) -> Profile:
        if self.create_error is not None:
            raise self.create_error
        key = (profile.fiscal_code, profile.version)
        if key in self.versions:
            raise StoreConflictError(f"{key} exists")
        self.versions[key] = profile
        self.created.append(profile)
        return profile


class RecordingWorkflows:
    def __init__(self) -> None:
        self.started: list[tuple[str, BaseModel]] = []

    async def start(self, name: str, workflow_input: BaseModel) -> str:
        self.started.append((name, workflow_input))
        return str(uuid.uuid4())

    def names(self) -> list[str]:
        return [name for name, _ in self.started]


class InMemoryServicePreferenceStore:
    def __init__(self) -> None:
        self.records: dict[str, ServicePreference] = {}
        self.attempts: list[str] = []
        self.failing_service_ids: set[str] = set()

    async def create(self, preference: ServicePreference) -> ServicePreference:
        self.attempts.append(preference.service_id)
        if preference.service_id in self.failing_service_ids:
            raise RuntimeError("store unavailable")
        if preference.document_id in self.records:
            raise StoreConflictError(preference.document_id)
        self.records[preference.document_id] = preference
        return preference


class InMemoryProfileEmailStore:
    def __init__(self, rows: set[tuple[str, str]] | None = None) -> None:
        self.rows: set[tuple[str, str]] = set(rows or ())
        self.operations: list[tuple[str, str]] = []
        self.insert_error: Exception | None = None

    async def insert(self, profile_email: ProfileEmail) -> None:
        self.operations.append(("insert", profile_email.email))
        if self.insert_error is not None:
            raise self.insert_error
        self.rows.add((profile_email.fiscal_code, profile_email.email))

    async def delete(self, profile_email: ProfileEmail) -> bool:
        self.operations.append(("delete", profile_email.email))
        key = (profile_email.fiscal_code, profile_email.email)
        if key not in self.rows:
            return False
        self.rows.remove(key)
        return True


class InMemorySagaHistory:
    def __init__(self) -> None:
        self.steps: dict[str, dict[int, tuple[str, ActivitySuccess]]] = {}

    async def load(self, saga_id: str) -> dict[int, tuple[str, ActivitySuccess]]:
        return dict(self.steps.get(saga_id, {}))

    async def record(
        self, saga_id: str, step_index: int, activity: str, outcome: ActivitySuccess
    ) -> None:
        self.steps.setdefault(saga_id, {}).setdefault(step_index, (activity, outcome))

    async def clear(self, saga_id: str) -> None:
        self.steps.pop(saga_id, None)


class _FakeTransaction:
    """Mimics psycopg's async transaction context manager."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False  # don't suppress exceptions


def make_mock_conn() -> Any:
    conn = AsyncMock()
    conn.transaction = MagicMock(side_effect=lambda: _FakeTransaction())
    conn.execute = AsyncMock()
    return conn


def build_profile(**overrides: Any) -> Profile:
    data: dict[str, Any] = {
        "fiscal_code": A_FISCAL_CODE,
        "version": 0,
        "email": "citizen@example.com",
        "is_email_validated": False,
        "is_inbox_enabled": False,
        "is_webhook_enabled": False,
        "accepted_tos_version": None,
        "service_preferences_settings": {"mode": "LEGACY", "version": 0},
    }
    data.update(overrides)
    return Profile.model_validate(data)


@pytest.fixture
def make_profile():
    return build_profile


@pytest.fixture
def profile_store() -> InMemoryProfileStore:
    return InMemoryProfileStore()


@pytest.fixture
def workflows() -> RecordingWorkflows:
    return RecordingWorkflows()


@pytest.fixture
def service(profile_store, workflows) -> ProfileService:
    return ProfileService(profile_store, workflows, clock=lambda: FIXED_NOW)


@pytest.fixture
def preference_store() -> InMemoryServicePreferenceStore:
    return InMemoryServicePreferenceStore()


@pytest.fixture
def email_store() -> InMemoryProfileEmailStore:
    return InMemoryProfileEmailStore()


@pytest.fixture
def saga_history() -> InMemorySagaHistory:
    return InMemorySagaHistory()


@pytest.fixture
def config() -> Config:
    return Config(
        database_url="postgresql://localhost/profiles_test",
        activity_first_retry_ms=100,
        activity_backoff_coefficient=2.0,
        activity_max_attempts=3,
        validation_url="https://example.test/validate",
    )


@pytest.fixture
def mock_conn():
    return make_mock_conn()


@pytest.fixture
def job_ctx(mock_conn, config) -> JobContext:
    return JobContext(conn=mock_conn, config=config)
