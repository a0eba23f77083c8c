"""Migrate a LEGACY block-list into per-service preference records."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from .errors import MigrationError, StoreConflictError
from .models import BlockedChannel, MigrateServicePreferencesInput, ServicePreference
from .stores import ServicePreferenceStore

logger = logging.getLogger(__name__)


def is_valid_service_id(service_id: object) -> bool:
    return isinstance(service_id, str) and bool(service_id) and service_id == service_id.strip()


def build_service_preference(
    service_id: str,
    blocked_channels: Iterable[BlockedChannel],
    fiscal_code: str,
    settings_version: int,
) -> ServicePreference:
    blocked = set(blocked_channels)
    return ServicePreference(
        fiscal_code=fiscal_code,
        service_id=service_id,
        settings_version=settings_version,
        is_email_enabled=BlockedChannel.EMAIL not in blocked,
        is_inbox_enabled=BlockedChannel.INBOX not in blocked,
        is_webhook_enabled=BlockedChannel.WEBHOOK not in blocked,
    )


def blocked_to_service_preferences(
    blocked: Mapping[str, Iterable[BlockedChannel]] | None,
    fiscal_code: str,
    settings_version: int,
) -> list[ServicePreference]:
    if not blocked:
        return []
    return [
        build_service_preference(service_id, channels, fiscal_code, settings_version)
        for service_id, channels in blocked.items()
        if is_valid_service_id(service_id)
    ]


async def migrate_service_preferences(
    migrate_input: MigrateServicePreferencesInput,
    store: ServicePreferenceStore,
) -> list[bool]:
    """Create one preference per blocked service, in block-list order.

    Returns one flag per record: True if created, False if it already existed.
    A duplicate counts as done, so re-running the same input is safe; any
    other failure aborts the rest of the batch.
    """
    old_profile = migrate_input.old_profile
    new_profile = migrate_input.new_profile
    settings_version = new_profile.service_preferences_settings.version
    log_extra = {
        "profile_fiscal_code": new_profile.fiscal_code,
        "profile_version": new_profile.version,
    }

    logger.info(
        "Migrating service preferences from legacy: DOING (settings version %d)",
        settings_version,
        extra=log_extra,
    )

    if settings_version < 0:
        raise MigrationError("Can not migrate to negative services preferences version.")

    preferences = blocked_to_service_preferences(
        old_profile.blocked_inbox_or_channels, new_profile.fiscal_code, settings_version
    )

    results: list[bool] = []
    for preference in preferences:
        try:
            await store.create(preference)
        except StoreConflictError:
            results.append(False)
            continue
        except Exception as exc:
            logger.error(
                "Can not create the service preference %s: %s",
                preference.document_id,
                exc,
                extra=log_extra,
            )
            raise MigrationError(
                f"Can not create the service preference {preference.document_id}: {exc}"
            ) from exc
        results.append(True)

    logger.info(
        "Migrating service preferences from legacy: DONE (%d created, %d already present)",
        results.count(True),
        results.count(False),
        extra=log_extra,
    )
    return results
