"""Validated-email index reconciliation.

For each subject the ``profile_emails`` index holds exactly one row: the email
of the most recent profile version with ``is_email_validated = true``. When a
validated version shows up on the change feed we look back through the
subject's earlier versions for the previously validated email and swap it.

Runs best-effort: failures are logged with subject and version and not
retried here. The next observed change reconciles again.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum
from typing import Any

from pydantic import ValidationError

from .models import ProfileEmail, ValidatedProfileDocument
from .stores import ProfileEmailStore, ProfileStore

logger = logging.getLogger(__name__)


class ReconcileAction(str, Enum):
    INSERTED = "inserted"
    REPLACED = "replaced"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


async def find_latest_validated_email(
    profiles: ProfileStore, fiscal_code: str, version: int
) -> str | None:
    """Email of the newest version <= ``version`` that was validated.

    Walks the version chain downwards and stops at the first validated
    version, at version 0, or at a version that does not exist.
    """
    for candidate in range(version, -1, -1):
        profile = await profiles.find_version(fiscal_code, candidate)
        if profile is None:
            return None
        if profile.is_email_validated:
            return profile.email
    return None


async def reconcile_validated_email(
    document: ValidatedProfileDocument,
    *,
    profiles: ProfileStore,
    emails: ProfileEmailStore,
) -> ReconcileAction:
    fiscal_code = document.fiscal_code
    current = ProfileEmail(fiscal_code=fiscal_code, email=document.email)

    if document.version == 0:
        await emails.insert(current)
        return ReconcileAction.INSERTED

    previous_email = await find_latest_validated_email(
        profiles, fiscal_code, document.version - 1
    )

    if previous_email is None:
        await emails.insert(current)
        return ReconcileAction.INSERTED

    if previous_email == document.email:
        return ReconcileAction.UNCHANGED

    # Delete first: a crash in between leaves no active row rather than two.
    deleted = await emails.delete(ProfileEmail(fiscal_code=fiscal_code, email=previous_email))
    if not deleted:
        logger.warning(
            "Previously validated email was not in the index",
            extra={"profile_fiscal_code": fiscal_code, "profile_version": document.version},
        )
    await emails.insert(current)
    return ReconcileAction.REPLACED


async def handle_profile_documents(
    documents: Iterable[Any],
    *,
    profiles: ProfileStore,
    emails: ProfileEmailStore,
) -> list[ReconcileAction]:
    """Reconcile each changed profile document in feed order."""
    actions: list[ReconcileAction] = []
    for raw in documents:
        try:
            document = ValidatedProfileDocument.model_validate(raw)
        except ValidationError:
            # Not validated, or no email: nothing to index.
            actions.append(ReconcileAction.SKIPPED)
            continue

        try:
            action = await reconcile_validated_email(document, profiles=profiles, emails=emails)
        except Exception:
            logger.exception(
                "Error reconciling validated email for profile %s version %d",
                document.fiscal_code,
                document.version,
                extra={
                    "profile_fiscal_code": document.fiscal_code,
                    "profile_version": document.version,
                },
            )
            action = ReconcileAction.FAILED
        actions.append(action)
    return actions
