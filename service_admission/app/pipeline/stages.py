"""
Pipeline stages.

Each stage inspects or enriches the request context and either lets the
request continue (returns ``None``) or short-circuits it with a
:class:`~shared.errors.Failure`.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, Union

from shared.errors import Failure, FailureKind, RateLimitExceededError, ValidationFailedError, Violation
from shared.metrics import MetricsCollector

from ..auth.authenticator import Authenticator, Rejection
from ..domain.models import RequestContext
from ..validation.validator import Validator

Outcome = Optional[Failure]
Handler = Callable[[RequestContext], Union[Any, Awaitable[Any]]]


class Stage(ABC):
    """One step of the admission pipeline."""

    name: str = "stage"

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds

    def applies(self, context: RequestContext) -> bool:
        return True

    def timeout_for(self, context: RequestContext) -> Optional[float]:
        return self.timeout_seconds

    @abstractmethod
    async def run(self, context: RequestContext) -> Outcome:
        """Run the stage against ``context``."""


class RateLimitStage(Stage):
    """Sheds load before any authentication or validation work."""

    name = "rate_limit"

    def __init__(self, limiter: Any, metrics: Optional[MetricsCollector] = None, timeout_seconds: Optional[float] = None):
        super().__init__(timeout_seconds)
        self.limiter = limiter
        self.metrics = metrics

    async def run(self, context: RequestContext) -> Outcome:
        decision = self.limiter.admit(context.identity)
        if inspect.isawaitable(decision):
            decision = await decision
        context.rate_limit = decision

        if self.metrics is not None:
            self.metrics.record_decision(decision.allowed)

        if decision.allowed:
            return None
        return Failure(
            kind=FailureKind.RATE_LIMIT_EXCEEDED,
            message=RateLimitExceededError.default_message,
            retry_after_seconds=decision.retry_after_seconds,
        )


class AuthStage(Stage):
    name = "auth"

    def __init__(self, authenticator: Authenticator, required_by_default: bool = True, timeout_seconds: Optional[float] = None):
        super().__init__(timeout_seconds)
        self.authenticator = authenticator
        self.required_by_default = required_by_default

    def applies(self, context: RequestContext) -> bool:
        if context.route.auth_required is None:
            return self.required_by_default
        return context.route.auth_required

    async def run(self, context: RequestContext) -> Outcome:
        result = await self.authenticator.authenticate(context.request, context.route.required_scopes)
        if isinstance(result, Rejection):
            return Failure(kind=result.reason, message=result.message)
        context.principal = result
        return None


class ValidateStage(Stage):
    """Applies the route's query and body schemas, reporting every problem.

    A body the listener could not decode is reported here as well, so it
    only surfaces after rate limiting and authentication have run.
    """

    name = "validate"

    def __init__(self, validator: Validator, timeout_seconds: Optional[float] = None):
        super().__init__(timeout_seconds)
        self.validator = validator

    def applies(self, context: RequestContext) -> bool:
        return context.route.declares_schema or context.request.body_error is not None

    async def run(self, context: RequestContext) -> Outcome:
        route = context.route
        request = context.request
        violations: List[Violation] = []

        if route.query_schema is not None:
            result = self.validator.validate(route.query_schema, request.query, location="query")
            violations.extend(result.violations)
            context.query_params = result.value

        if request.body_error is not None:
            violations.append(Violation("body", request.body_error))
        elif route.body_schema is not None:
            result = self.validator.validate(route.body_schema, request.body)
            violations.extend(result.violations)
            context.payload = result.value

        if violations:
            return Failure(
                kind=FailureKind.VALIDATION_FAILED,
                message=ValidationFailedError.default_message,
                violations=tuple(violations),
            )
        return None


class HandleStage(Stage):
    """Invokes the business handler; its return value becomes the response data."""

    name = "handle"

    def __init__(self, handler: Handler, timeout_seconds: Optional[float] = None):
        super().__init__(timeout_seconds)
        self.handler = handler

    def timeout_for(self, context: RequestContext) -> Optional[float]:
        if context.route.timeout_seconds is not None:
            return context.route.timeout_seconds
        return self.timeout_seconds

    async def run(self, context: RequestContext) -> Outcome:
        if inspect.iscoroutinefunction(self.handler):
            result = await self.handler(context)
        else:
            result = await asyncio.to_thread(self.handler, context)
            if inspect.isawaitable(result):
                result = await result
        context.result = result
        return None
