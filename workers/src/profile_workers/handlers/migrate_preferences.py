from typing import Any

from pydantic import ValidationError

from ..legacy_migration import migrate_service_preferences
from ..models import MigrateServicePreferencesInput
from ..registry import JobContext, register
from ..stores import PostgresServicePreferenceStore


@register("preferences.migrate_legacy")
async def handle_migrate_legacy_preferences(ctx: JobContext, payload: dict[str, Any]) -> None:
    try:
        migrate_input = MigrateServicePreferencesInput.model_validate(payload.get("input"))
    except ValidationError as exc:
        raise ValueError(f"Invalid preferences.migrate_legacy payload: {exc}") from exc

    await migrate_service_preferences(migrate_input, PostgresServicePreferenceStore(ctx.conn))
