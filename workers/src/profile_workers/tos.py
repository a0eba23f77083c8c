"""Terms-of-service acceptance rules."""

from __future__ import annotations

from .models import Profile


def is_first_tos_acceptance(previous: int | None, new: int | None) -> bool:
    return previous is None and new is not None


def apply_tos_auto_enable(previous_tos_version: int | None, profile: Profile) -> Profile:
    """Enable inbox and webhook when the citizen accepts the ToS for the first time.

    Applied after every other merge; overrides whatever the caller sent for
    those two flags and leaves everything else alone.
    """
    if not is_first_tos_acceptance(previous_tos_version, profile.accepted_tos_version):
        return profile
    return profile.model_copy(update={"is_inbox_enabled": True, "is_webhook_enabled": True})
