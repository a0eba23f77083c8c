"""Profile documents, preference records and workflow payload contracts.

Every value that crosses a store or workflow boundary is a pydantic model so
that decoding failures surface as field-level ``ValidationError``s instead of
``KeyError``s deep inside a handler.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

FISCAL_CODE_PATTERN = re.compile(
    r"^[A-Z]{6}[0-9LMNPQRSTUV]{2}[ABCDEHLMPRST][0-9LMNPQRSTUV]{2}"
    r"[A-Z][0-9LMNPQRSTUV]{3}[A-Z]$"
)
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ServicePreferencesMode(str, Enum):
    LEGACY = "LEGACY"
    MANUAL = "MANUAL"
    AUTO = "AUTO"


class BlockedChannel(str, Enum):
    EMAIL = "EMAIL"
    INBOX = "INBOX"
    WEBHOOK = "WEBHOOK"


def validate_fiscal_code(value: str) -> str:
    normalized = value.strip().upper()
    if not FISCAL_CODE_PATTERN.match(normalized):
        raise ValueError("fiscal_code is not a valid fiscal code")
    return normalized


def validate_email(value: str) -> str:
    normalized = value.strip()
    if not EMAIL_PATTERN.match(normalized):
        raise ValueError("email is not a valid email address")
    return normalized


class ServicePreferencesSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: ServicePreferencesMode = ServicePreferencesMode.LEGACY
    # Not constrained here: documents written before the settings counter
    # existed may carry a negative sentinel, see legacy_migration.
    version: int = 0


class ServicePreferencesBlock(BaseModel):
    """The preference block a client may attach to an update request."""

    model_config = ConfigDict(extra="forbid")

    mode: ServicePreferencesMode


class Profile(BaseModel):
    """One stored version of a citizen profile."""

    fiscal_code: str
    version: int = Field(ge=0)
    email: str | None = None
    is_email_validated: bool = False
    is_email_enabled: bool = True
    is_inbox_enabled: bool = False
    is_webhook_enabled: bool = False
    accepted_tos_version: int | None = Field(default=None, ge=0)
    preferred_languages: list[str] | None = None
    blocked_inbox_or_channels: dict[str, list[BlockedChannel]] | None = None
    service_preferences_settings: ServicePreferencesSettings = Field(
        default_factory=ServicePreferencesSettings
    )

    @field_validator("fiscal_code")
    @classmethod
    def check_fiscal_code(cls, value: str) -> str:
        return validate_fiscal_code(value)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class _ProfileFields(BaseModel):
    """Client-writable profile fields. ``None`` means "not supplied"."""

    model_config = ConfigDict(extra="forbid")

    email: str | None = None
    is_email_enabled: bool | None = None
    is_inbox_enabled: bool | None = None
    is_webhook_enabled: bool | None = None
    accepted_tos_version: int | None = Field(default=None, ge=0)
    preferred_languages: list[str] | None = None
    blocked_inbox_or_channels: dict[str, list[BlockedChannel]] | None = None

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return validate_email(value)


class ProfileUpdatePayload(_ProfileFields):
    version: int = Field(ge=0)
    # Accepted for wire compatibility; validity is owned by the token flow.
    is_email_validated: bool | None = None
    service_preferences_settings: ServicePreferencesBlock | None = None


class ProfileCreatePayload(_ProfileFields):
    is_email_validated: bool | None = None


class ServicePreference(BaseModel):
    model_config = ConfigDict(frozen=True)

    fiscal_code: str
    service_id: str
    settings_version: int = Field(ge=0)
    is_email_enabled: bool
    is_inbox_enabled: bool
    is_webhook_enabled: bool

    @property
    def document_id(self) -> str:
        return f"{self.fiscal_code}-{self.service_id}-{self.settings_version:016d}"


class ProfileEmail(BaseModel):
    model_config = ConfigDict(frozen=True)

    fiscal_code: str
    email: str


class ValidatedProfileDocument(BaseModel):
    """The subset of a profile version the validated-email reconciler acts on."""

    fiscal_code: str
    version: int = Field(ge=0)
    email: str
    is_email_validated: Literal[True]


# --- Workflow inputs ---


class ProfileUpsertedInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    old_profile: Profile | None = None
    new_profile: Profile
    updated_at: datetime


class MigrateServicePreferencesInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    old_profile: Profile
    new_profile: Profile


class EmailValidationInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    fiscal_code: str

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("fiscal_code")
    @classmethod
    def check_fiscal_code(cls, value: str) -> str:
        return validate_fiscal_code(value)


# --- Tagged outcomes ---


class ActivitySuccess(BaseModel):
    kind: Literal["SUCCESS"] = "SUCCESS"
    value: dict[str, Any] = Field(default_factory=dict)


class ActivityFailure(BaseModel):
    kind: Literal["FAILURE"] = "FAILURE"
    reason: str


ActivityOutcome = Annotated[
    Union[ActivitySuccess, ActivityFailure], Field(discriminator="kind")
]
activity_outcome_adapter: TypeAdapter[ActivitySuccess | ActivityFailure] = TypeAdapter(
    ActivityOutcome
)


class SagaSuccess(BaseModel):
    kind: Literal["SUCCESS"] = "SUCCESS"


class SagaFailure(BaseModel):
    kind: Literal["FAILURE"] = "FAILURE"
    reason: str


SagaResult = SagaSuccess | SagaFailure
