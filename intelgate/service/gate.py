from __future__ import annotations

import functools
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from intelgate.logging import get_logger
from intelgate.service.audit import AuditLogger
from intelgate.service.errors import (
    AuthRequiredError,
    ForbiddenError,
    RateLimitedError,
    ValidationFailedError,
)
from intelgate.service.operations import OperationPolicy, OperationTable
from intelgate.service.rate_limit import RateLimitDecision, RateLimiter
from intelgate.storage.models import ActorIdentity, Role

logger = get_logger(__name__)

Validator = Union[type[BaseModel], Callable[[Any], Any]]
BusinessFn = Callable[[Any], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class GuardOutcome:
    result: Any
    decision: RateLimitDecision
    policy: OperationPolicy


def _describe_validation_error(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid input"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "__root__")
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def validate_input(validator: Optional[Validator], payload: Any) -> Any:
    """Run a pydantic model or callable validator; failures become ValidationFailedError."""

    if validator is None:
        return payload
    try:
        if isinstance(validator, type) and issubclass(validator, BaseModel):
            return validator.model_validate(payload)
        cleaned = validator(payload)
    except ValidationFailedError:
        raise
    except PydanticValidationError as exc:
        raise ValidationFailedError(_describe_validation_error(exc)) from exc
    except (ValueError, TypeError) as exc:
        raise ValidationFailedError(str(exc) or "invalid input") from exc
    return payload if cleaned is None else cleaned


class SecurityGate:
    """Runs every guarded operation through the same ordered checks.

    identity -> role tier -> input validation -> rate limit -> business call
    -> audit. The first failing check stops the pipeline; role failures never
    consume quota. The business result or exception is returned unchanged
    and the audit write never affects it.
    """

    def __init__(
        self,
        operations: OperationTable,
        limiter: RateLimiter,
        audit: AuditLogger,
    ) -> None:
        self.operations = operations
        self.limiter = limiter
        self.audit = audit

    async def guard(
        self,
        operation: str,
        actor: Optional[ActorIdentity],
        payload: Any,
        business_fn: BusinessFn,
        *,
        validator: Optional[Validator] = None,
        resource_id: Optional[str] = None,
    ) -> Any:
        outcome = await self.execute(
            operation,
            actor,
            payload,
            business_fn,
            validator=validator,
            resource_id=resource_id,
        )
        return outcome.result

    async def execute(
        self,
        operation: str,
        actor: Optional[ActorIdentity],
        payload: Any,
        business_fn: BusinessFn,
        *,
        validator: Optional[Validator] = None,
        resource_id: Optional[str] = None,
    ) -> GuardOutcome:
        """Same as ``guard`` but also returns the rate-limit decision."""
        policy = self.operations.require(operation)

        if actor is None or not actor.authenticated or not actor.id:
            logger.info("gate_auth_required", operation=operation)
            raise AuthRequiredError()

        role = Role.parse(actor.role)
        if role is None or not role.satisfies(policy.role):
            logger.warning(
                "gate_forbidden",
                operation=operation,
                actor_id=actor.id,
                actor_role=getattr(actor.role, "value", actor.role),
            )
            raise ForbiddenError()

        data = validate_input(validator, payload)

        decision = await self.limiter.check(
            RateLimiter.key_for(actor.id, operation), policy.max_calls, policy.window_seconds
        )
        if not decision.allowed:
            raise RateLimitedError(decision.reset_seconds, limit=decision.limit)

        try:
            result = business_fn(data)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            self.audit.log(
                actor.id,
                policy.audit_action,
                policy.resource_type,
                resource_id,
                {"operation": operation, "outcome": "failure", "error_type": type(exc).__name__},
            )
            raise

        self.audit.log(
            actor.id,
            policy.audit_action,
            policy.resource_type,
            resource_id,
            {"operation": operation, "outcome": "success"},
        )
        return GuardOutcome(result=result, decision=decision, policy=policy)

    def guarded(
        self, operation: str, validator: Optional[Validator] = None
    ) -> Callable[[Callable[..., Any]], Callable[..., Awaitable[Any]]]:
        """Decorate ``fn(actor, data)`` so callers invoke ``await fn(actor, payload)``.

        The operation must already exist in the table; unknown names fail at
        decoration time.
        """
        self.operations.require(operation)

        def decorator(func: Callable[..., Any]) -> Callable[..., Awaitable[Any]]:
            @functools.wraps(func)
            async def wrapper(
                actor: Optional[ActorIdentity],
                payload: Any = None,
                *,
                resource_id: Optional[str] = None,
            ) -> Any:
                return await self.guard(
                    operation,
                    actor,
                    payload,
                    lambda data: func(actor, data),
                    validator=validator,
                    resource_id=resource_id,
                )

            return wrapper

        return decorator
