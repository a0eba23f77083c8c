"""React to a created or updated profile version."""

import logging
from typing import Any

from pydantic import ValidationError

from ..models import EmailValidationInput, Profile, ProfileUpsertedInput
from ..registry import JobContext, register
from ..workflows import EMAIL_VALIDATION_PROCESS, PostgresWorkflowClient

logger = logging.getLogger(__name__)


def needs_email_validation(old_profile: Profile | None, new_profile: Profile) -> bool:
    """A new, unvalidated address needs a verification email."""
    if new_profile.email is None or new_profile.is_email_validated:
        return False
    old_email = old_profile.email if old_profile is not None else None
    return new_profile.email != old_email


@register("profile.upserted")
async def handle_profile_upserted(ctx: JobContext, payload: dict[str, Any]) -> None:
    try:
        upserted = ProfileUpsertedInput.model_validate(payload.get("input"))
    except ValidationError as exc:
        raise ValueError(f"Invalid profile.upserted payload: {exc}") from exc

    new_profile = upserted.new_profile
    if not needs_email_validation(upserted.old_profile, new_profile):
        logger.debug(
            "No email validation needed",
            extra={
                "profile_fiscal_code": new_profile.fiscal_code,
                "profile_version": new_profile.version,
            },
        )
        return

    workflows = PostgresWorkflowClient(ctx.conn, max_retries=ctx.config.max_retries)
    await workflows.start(
        EMAIL_VALIDATION_PROCESS,
        EmailValidationInput(email=new_profile.email, fiscal_code=new_profile.fiscal_code),
    )
    logger.info(
        "Email validation process started",
        extra={
            "profile_fiscal_code": new_profile.fiscal_code,
            "profile_version": new_profile.version,
        },
    )
