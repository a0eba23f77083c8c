"""Optimistic concurrency between a submitted version and the stored latest."""

from __future__ import annotations

import logging

from .errors import ProfileConflictError, ProfileNotFoundError
from .models import Profile

logger = logging.getLogger(__name__)


def check_version(
    fiscal_code: str, latest: Profile | None, submitted_version: int
) -> Profile:
    """Return ``latest`` when the caller edited it, otherwise raise.

    No lock is held: a writer that loses the race gets a conflict and has to
    re-read before trying again.
    """
    if latest is None:
        raise ProfileNotFoundError(fiscal_code)

    if submitted_version != latest.version:
        logger.warning(
            "Profile update conflict: submitted version %d, current version %d",
            submitted_version,
            latest.version,
            extra={
                "profile_fiscal_code": fiscal_code,
                "profile_version": latest.version,
            },
        )
        raise ProfileConflictError(
            f"Version {submitted_version} is not the latest version "
            f"(current version is {latest.version})."
        )

    return latest
