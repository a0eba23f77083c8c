"""Profile create, read and update.

``update_profile`` is the only write path for an existing profile. It decides
the next document version, persists it, and only then notifies downstream
workflows: the ``profile.upserted`` watcher always, and the legacy preference
migration when the profile moves from LEGACY to AUTO.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import psycopg
from pydantic import BaseModel, ValidationError

from .config import Config
from .errors import (
    ProfileConflictError,
    ProfileNotFoundError,
    ProfileQueryError,
    ProfileValidationError,
    StoreConflictError,
    validation_issues,
)
from .models import (
    MigrateServicePreferencesInput,
    Profile,
    ProfileCreatePayload,
    ProfileUpdatePayload,
    ProfileUpsertedInput,
    ServicePreferencesSettings,
    validate_fiscal_code,
)
from .preference_mode import compute_mode_transition, is_legacy_to_auto, requested_mode
from .stores import PostgresProfileStore, ProfileStore
from .tos import apply_tos_auto_enable
from .version_guard import check_version
from .workflows import (
    MIGRATE_LEGACY_PREFERENCES,
    PROFILE_UPSERTED,
    PostgresWorkflowClient,
    WorkflowStarter,
)

logger = logging.getLogger(__name__)

# Fields an update payload never merges directly: they are either checked
# (version) or computed by the engine.
_COMPUTED_FIELDS = {"version", "is_email_validated", "service_preferences_settings"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_payload(model: type[BaseModel], payload: Any) -> Any:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ProfileValidationError("Invalid profile payload", validation_issues(exc)) from exc


def _parse_fiscal_code(fiscal_code: str) -> str:
    try:
        return validate_fiscal_code(fiscal_code)
    except ValueError as exc:
        raise ProfileValidationError(
            "Invalid fiscal code",
            [{"field": "fiscal_code", "message": str(exc), "code": "value_error"}],
        ) from exc


def merge_update(
    existing: Profile,
    payload: ProfileUpdatePayload,
    settings: ServicePreferencesSettings,
) -> Profile:
    """Build the next version of ``existing`` from ``payload``.

    Fields the payload omits keep their stored value. An email change always
    drops validity. ToS auto-enable runs last.
    """
    email_changed = payload.email is not None and payload.email != existing.email

    merged = {
        **existing.model_dump(),
        **payload.model_dump(exclude_none=True, exclude=_COMPUTED_FIELDS),
        "fiscal_code": existing.fiscal_code,
        "version": existing.version + 1,
        "is_email_validated": False if email_changed else existing.is_email_validated,
        "service_preferences_settings": settings,
    }
    return apply_tos_auto_enable(existing.accepted_tos_version, Profile.model_validate(merged))


class ProfileService:
    def __init__(
        self,
        profiles: ProfileStore,
        workflows: WorkflowStarter,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.profiles = profiles
        self.workflows = workflows
        self.clock = clock

    @classmethod
    def for_connection(
        cls, conn: psycopg.AsyncConnection[Any], config: Config
    ) -> "ProfileService":
        """Wire the Postgres store and workflow client onto one connection.

        The new profile version and the started workflow jobs go through
        ``conn``: call the service inside ``conn.transaction()`` so a version
        is never committed without its notifications, or the reverse.
        """
        return cls(
            PostgresProfileStore(conn),
            PostgresWorkflowClient(conn, max_retries=config.max_retries),
        )

    async def get_profile(self, fiscal_code: str) -> Profile:
        fiscal_code = _parse_fiscal_code(fiscal_code)
        profile = await self.profiles.find_latest(fiscal_code)
        if profile is None:
            raise ProfileNotFoundError(fiscal_code)
        return profile

    async def create_profile(
        self, fiscal_code: str, payload: ProfileCreatePayload | dict[str, Any]
    ) -> Profile:
        """Persist version 0 of a new profile in LEGACY mode."""
        fiscal_code = _parse_fiscal_code(fiscal_code)
        request = _parse_payload(ProfileCreatePayload, payload)

        profile = Profile.model_validate(
            {
                **request.model_dump(exclude_none=True),
                "fiscal_code": fiscal_code,
                "version": 0,
                "service_preferences_settings": ServicePreferencesSettings(),
            }
        )
        profile = apply_tos_auto_enable(None, profile)

        try:
            created = await self.profiles.create(profile)
        except StoreConflictError as exc:
            logger.warning(
                "Profile already exists",
                extra={"profile_fiscal_code": fiscal_code, "profile_version": 0},
            )
            raise ProfileConflictError("A profile with the provided fiscal code already exists") from exc
        except ProfileQueryError:
            logger.error(
                "Error while creating the new profile",
                extra={"profile_fiscal_code": fiscal_code, "profile_version": 0},
            )
            raise

        await self.workflows.start(
            PROFILE_UPSERTED,
            ProfileUpsertedInput(new_profile=created, updated_at=self.clock()),
        )
        return created

    async def update_profile(
        self, fiscal_code: str, payload: ProfileUpdatePayload | dict[str, Any]
    ) -> Profile:
        """Write the next version of a profile.

        Raises ProfileNotFoundError, ProfileConflictError (stale version or
        forbidden mode change), ProfileQueryError (store failure) or
        ProfileValidationError. Nothing is written and no workflow starts
        unless every check passes.
        """
        fiscal_code = _parse_fiscal_code(fiscal_code)
        request = _parse_payload(ProfileUpdatePayload, payload)
        log_extra = {"profile_fiscal_code": fiscal_code, "profile_version": request.version}

        existing = check_version(
            fiscal_code, await self.profiles.find_latest(fiscal_code), request.version
        )

        # The mode check must short-circuit before anything is merged.
        transition = compute_mode_transition(
            existing.service_preferences_settings,
            requested_mode(request.service_preferences_settings),
        )

        candidate = merge_update(existing, request, transition.settings)

        try:
            updated = await self.profiles.create(candidate)
        except StoreConflictError as exc:
            # Lost the race against a concurrent writer at the same version.
            logger.error("Concurrent profile update lost the version race", extra=log_extra)
            raise ProfileQueryError("Error while updating the existing profile", exc) from exc
        except ProfileQueryError:
            logger.error("Error while updating the existing profile", extra=log_extra)
            raise

        logger.info(
            "Profile updated to version %d (mode %s, settings version %d)",
            updated.version,
            updated.service_preferences_settings.mode.value,
            updated.service_preferences_settings.version,
            extra={"profile_fiscal_code": fiscal_code, "profile_version": updated.version},
        )

        await self.workflows.start(
            PROFILE_UPSERTED,
            ProfileUpsertedInput(
                old_profile=existing, new_profile=updated, updated_at=self.clock()
            ),
        )

        if is_legacy_to_auto(
            existing.service_preferences_settings, updated.service_preferences_settings
        ):
            await self.workflows.start(
                MIGRATE_LEGACY_PREFERENCES,
                MigrateServicePreferencesInput(old_profile=existing, new_profile=updated),
            )

        return updated
