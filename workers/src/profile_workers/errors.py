"""Error taxonomy for profile mutations, stores and workflow activities."""

from __future__ import annotations

from typing import Any


class ProfileError(Exception):
    """Base class for signals returned to callers of the profile service."""

    status_code = 500


class ProfileNotFoundError(ProfileError):
    status_code = 404

    def __init__(self, fiscal_code: str) -> None:
        super().__init__("Could not find a profile with the provided fiscal code")
        self.fiscal_code = fiscal_code


class ProfileConflictError(ProfileError):
    """Version mismatch or forbidden preference-mode transition."""

    status_code = 409


class ProfileQueryError(ProfileError):
    """The underlying store failed; the request is aborted."""

    status_code = 500

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class ProfileValidationError(ProfileError):
    status_code = 400

    def __init__(self, message: str, issues: list[dict[str, Any]]) -> None:
        super().__init__(message)
        self.issues = issues


class StoreConflictError(Exception):
    """A create hit an existing key."""


class MigrationError(Exception):
    pass


class ActivityFailureError(Exception):
    """A saga step ended in FAILURE. Raised so the host retries the whole saga."""

    def __init__(self, activity: str, reason: str) -> None:
        super().__init__(f"Activity {activity} failed: {reason}")
        self.activity = activity
        self.reason = reason


def http_status_for(exc: BaseException) -> int:
    if isinstance(exc, ProfileError):
        return exc.status_code
    return 500


def validation_issues(exc: Any) -> list[dict[str, Any]]:
    """Flatten a pydantic ValidationError into field-level issues."""
    return [
        {
            "field": ".".join(str(part) for part in error.get("loc", ())),
            "message": error.get("msg", ""),
            "code": error.get("type", "value_error"),
        }
        for error in exc.errors()
    ]
