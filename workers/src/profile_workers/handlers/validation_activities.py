"""Activities of the email validation saga.

Both activities return a tagged outcome for problems a retry cannot fix and
raise for everything else, so ``call_activity_with_retry`` backs off and
tries again.
"""

import hashlib
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

from pydantic import BaseModel, ValidationError, field_validator

from ..models import ActivityFailure, ActivitySuccess, validate_email, validate_fiscal_code
from ..registry import JobContext, activity

logger = logging.getLogger(__name__)

CREATE_VALIDATION_TOKEN = "create_validation_token"
SEND_VALIDATION_EMAIL = "send_validation_email"

_TOKEN_NAMESPACE = uuid.UUID("5b0d2f7e-0a57-4b6c-9f34-2f5d2d1c8a10")

VALIDATION_EMAIL_SUBJECT = "Confirm your email address"


class CreateValidationTokenInput(BaseModel):
    email: str
    fiscal_code: str
    request_id: str

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("fiscal_code")
    @classmethod
    def check_fiscal_code(cls, value: str) -> str:
        return validate_fiscal_code(value)


class SendValidationEmailInput(BaseModel):
    email: str
    token: str

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("token")
    @classmethod
    def check_token(cls, value: str) -> str:
        token_id, _, validator = value.partition(":")
        if not token_id or not validator:
            raise ValueError("token must be '<token id>:<validator>'")
        return value


def token_id_for_request(request_id: str) -> str:
    """The same logical request always maps to the same token row."""
    return str(uuid.uuid5(_TOKEN_NAMESPACE, request_id))


def hash_validator(validator: str) -> str:
    return hashlib.sha256(validator.encode("utf-8")).hexdigest()


def build_validation_link(base_url: str, token: str) -> str:
    return f"{base_url}?{urlencode({'token': token})}"


def build_validation_email_body(link: str) -> str:
    return (
        "Please confirm your email address by opening the link below.\n\n"
        f"{link}\n\n"
        "If you did not request this, you can ignore this message.\n"
    )


@activity(CREATE_VALIDATION_TOKEN)
async def create_validation_token(
    ctx: JobContext, payload: dict[str, Any]
) -> ActivitySuccess | ActivityFailure:
    """Issue a validation token for (fiscal code, email).

    Calling twice for the same request rewrites the same row with a fresh
    validator; only the last issued validator is accepted.
    """
    try:
        token_input = CreateValidationTokenInput.model_validate(payload)
    except ValidationError as exc:
        return ActivityFailure(reason=f"Error decoding activity input: {exc}")

    token_id = token_id_for_request(token_input.request_id)
    validator = secrets.token_hex(16)
    expires_at = datetime.now(timezone.utc) + timedelta(
        hours=ctx.config.validation_token_ttl_hours
    )

    await ctx.conn.execute(
        """
        INSERT INTO validation_tokens (id, fiscal_code, email, validator_hash, expires_at)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (id) DO UPDATE SET
            validator_hash = EXCLUDED.validator_hash,
            expires_at = EXCLUDED.expires_at
        """,
        (
            token_id,
            token_input.fiscal_code,
            token_input.email,
            hash_validator(validator),
            expires_at,
        ),
    )
    logger.info(
        "Validation token %s created",
        token_id,
        extra={"profile_fiscal_code": token_input.fiscal_code},
    )
    return ActivitySuccess(
        value={
            "token_id": token_id,
            "validator": validator,
            "expires_at": expires_at.isoformat(),
        }
    )


@activity(SEND_VALIDATION_EMAIL)
async def send_validation_email(
    ctx: JobContext, payload: dict[str, Any]
) -> ActivitySuccess | ActivityFailure:
    """Queue the verification email in the outbox for delivery."""
    try:
        email_input = SendValidationEmailInput.model_validate(payload)
    except ValidationError as exc:
        return ActivityFailure(reason=f"Error decoding activity input: {exc}")

    link = build_validation_link(ctx.config.validation_url, email_input.token)
    outbox_id = str(uuid.uuid4())
    await ctx.conn.execute(
        """
        INSERT INTO email_outbox (id, recipient, subject, body)
        VALUES (%s, %s, %s, %s)
        """,
        (outbox_id, email_input.email, VALIDATION_EMAIL_SUBJECT, build_validation_email_body(link)),
    )
    logger.info("Validation email queued (outbox_id=%s)", outbox_id)
    return ActivitySuccess(value={"outbox_id": outbox_id})
