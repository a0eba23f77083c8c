"""Email validation process: create a validation token, then send the link.

Runs as a saga. A failed step raises so the worker retries the whole
process; completed steps are replayed from ``saga_steps`` on the next run.
"""

import logging
from typing import Any

from pydantic import ValidationError

from ..models import EmailValidationInput, SagaFailure, SagaResult, SagaSuccess
from ..registry import JobContext, register
from ..saga import RetryPolicy, Saga
from ..stores import PostgresSagaHistoryStore
from .validation_activities import CREATE_VALIDATION_TOKEN, SEND_VALIDATION_EMAIL

logger = logging.getLogger(__name__)


async def run_email_validation(saga: Saga, raw_input: Any) -> SagaResult:
    try:
        process_input = EmailValidationInput.model_validate(raw_input)
    except ValidationError as exc:
        # A retry cannot fix bad input, so report instead of raising.
        reason = f"Error decoding input: {exc}"
        logger.error("Email validation process %s: %s", saga.saga_id, reason)
        return SagaFailure(reason=reason)

    token = await saga.step(
        CREATE_VALIDATION_TOKEN,
        {
            "email": process_input.email,
            "fiscal_code": process_input.fiscal_code,
            "request_id": saga.saga_id,
        },
    )
    logger.info(
        "Validation token created (token_id=%s)",
        token.get("token_id"),
        extra={"profile_fiscal_code": process_input.fiscal_code},
    )

    await saga.step(
        SEND_VALIDATION_EMAIL,
        {
            "email": process_input.email,
            "token": f"{token['token_id']}:{token['validator']}",
        },
    )

    saga.succeed()
    logger.info(
        "Validation email sent",
        extra={"profile_fiscal_code": process_input.fiscal_code},
    )
    return SagaSuccess()


@register("email_validation.process", transactional=False)
async def handle_email_validation_process(ctx: JobContext, payload: dict[str, Any]) -> None:
    instance_id = payload.get("instance_id")
    if not instance_id:
        raise ValueError("Missing instance_id in email_validation.process payload")

    saga = Saga(
        str(instance_id),
        ctx,
        RetryPolicy.from_config(ctx.config),
        history=PostgresSagaHistoryStore(ctx.conn),
    )
    await run_email_validation(saga, payload.get("input"))
