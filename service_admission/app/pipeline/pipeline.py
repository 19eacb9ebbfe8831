"""
Request admission pipeline.
"""

import asyncio
import math
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from shared.config import AdmissionConfig
from shared.envelope import Envelope, SuccessEnvelope
from shared.errors import Failure, FailureKind, ShuttingDownError, StageTimeoutError, failure_from_exception
from shared.logging import clear_context, get_logger, set_client_context, set_request_id
from shared.metrics import MetricsCollector

from ..auth.authenticator import Authenticator, CredentialVerifier
from ..domain.error_translator import ErrorTranslator
from ..domain.models import HandlerResult, Request, RequestContext, RouteConfig
from ..identity.extractor import ClientKeyExtractor
from ..lifecycle.shutdown import ShutdownCoordinator
from ..ratelimit.redis_bucket import RedisTokenBucketRateLimiter
from ..ratelimit.token_bucket import Decision, TokenBucketRateLimiter
from ..validation.validator import Validator
from .stages import AuthStage, Handler, HandleStage, Outcome, RateLimitStage, Stage, ValidateStage


@dataclass
class PipelineResponse:
    """Status code, envelope and headers for the HTTP listener to serialize."""

    status_code: int
    envelope: Envelope
    headers: Dict[str, str] = field(default_factory=dict)
    retry_after_seconds: Optional[float] = None

    @property
    def success(self) -> bool:
        return isinstance(self.envelope, SuccessEnvelope)

    def to_wire(self) -> Dict[str, Any]:
        return self.envelope.to_wire()


class Pipeline:
    """Runs every request through rate limiting, authentication, validation
    and the handler, in that fixed order.

    The first stage that returns a failure ends the request; the failure is
    translated into exactly one error envelope. Handler exceptions take the
    same path. Each stage runs shielded: a timeout or a cancelled caller
    stops the pipeline from waiting but never interrupts the stage itself.
    """

    def __init__(
        self,
        rate_limiter: Any,
        authenticator: Authenticator,
        validator: Optional[Validator] = None,
        *,
        extractor: Optional[ClientKeyExtractor] = None,
        translator: Optional[ErrorTranslator] = None,
        shutdown: Optional[ShutdownCoordinator] = None,
        metrics: Optional[MetricsCollector] = None,
        auth_required_by_default: bool = True,
        auth_timeout_seconds: Optional[float] = None,
        handler_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.authenticator = authenticator
        self.validator = validator or Validator()
        self.extractor = extractor or ClientKeyExtractor()
        self.metrics = metrics
        self.translator = translator or ErrorTranslator(metrics)
        self.shutdown = shutdown or ShutdownCoordinator()
        self.handler_timeout_seconds = handler_timeout_seconds
        self.logger = get_logger("admission.pipeline")

        self._admission_stages: List[Stage] = [
            RateLimitStage(rate_limiter, metrics),
            AuthStage(authenticator, auth_required_by_default, auth_timeout_seconds),
            ValidateStage(self.validator),
        ]

    @classmethod
    def from_config(
        cls,
        config: AdmissionConfig,
        verifier: CredentialVerifier,
        *,
        rate_limiter: Any = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "Pipeline":
        """Assemble a pipeline from configuration."""
        if rate_limiter is None:
            if config.rate_limit.backend == "redis":
                rate_limiter = RedisTokenBucketRateLimiter(
                    config.redis_url,
                    config.rate_limit.capacity,
                    config.rate_limit.refill_per_second,
                    idle_eviction_seconds=config.rate_limit.idle_eviction_seconds,
                )
            else:
                rate_limiter = TokenBucketRateLimiter.from_settings(config.rate_limit, clock=clock)

        shutdown = ShutdownCoordinator(config.shutdown.drain_timeout_seconds, clock=clock)
        if metrics is not None:
            shutdown.on_change(metrics.set_inflight)

        return cls(
            rate_limiter,
            Authenticator(verifier),
            Validator(config.validation.unknown_field_policy),
            extractor=ClientKeyExtractor.from_settings(config.identity),
            shutdown=shutdown,
            metrics=metrics,
            auth_required_by_default=config.auth.required,
            auth_timeout_seconds=config.auth.timeout_seconds,
            handler_timeout_seconds=config.handler_timeout_seconds,
        )

    def stages_for(self, handler: Handler) -> List[Stage]:
        return [*self._admission_stages, HandleStage(handler, self.handler_timeout_seconds)]

    async def handle(self, request: Request, route: RouteConfig, handler: Handler) -> PipelineResponse:
        """Process one request and return its single response."""
        if not self.shutdown.try_enter():
            self.logger.info("Request refused during shutdown", method=request.method, path=request.path)
            failure = Failure(FailureKind.SHUTTING_DOWN, ShuttingDownError.default_message)
            return self._failure_response(failure, None)

        started = time.perf_counter()
        request_id = set_request_id(request.header("X-Request-ID"))
        context: Optional[RequestContext] = None
        try:
            context = RequestContext(
                request=request,
                route=route,
                request_id=request_id,
                identity=self.extractor.extract(request),
            )
            set_client_context(client_id=context.identity)

            failure: Outcome = None
            for stage in self.stages_for(handler):
                if not stage.applies(context):
                    continue
                failure = await self._run_stage(stage, context)
                if failure is not None:
                    break
                if stage.name == AuthStage.name and context.principal is not None:
                    set_client_context(principal=context.principal.subject)

            if failure is None:
                response = self._success_response(context)
            else:
                response = self._failure_response(failure, context)
        except Exception as exc:
            response = self._failure_response(failure_from_exception(exc), context)
        finally:
            self.shutdown.leave()

        duration = time.perf_counter() - started
        self.logger.info(
            "Request completed",
            method=request.method,
            path=request.path,
            route=route.name,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )
        if self.metrics is not None:
            self.metrics.record_http_request(request.method, route.name, response.status_code, duration)
        clear_context()
        return response

    async def _run_stage(self, stage: Stage, context: RequestContext) -> Outcome:
        timeout = stage.timeout_for(context)
        timer = self.metrics.time_stage(stage.name) if self.metrics is not None else nullcontext()
        with timer:
            task = asyncio.ensure_future(self._invoke(stage, context))
            try:
                if timeout is None:
                    return await asyncio.shield(task)
                return await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.TimeoutError:
                task.add_done_callback(self._late_result_logger(stage.name))
                self.logger.warning("Stage timed out", stage=stage.name, timeout_seconds=timeout)
                return Failure(FailureKind.TIMEOUT, StageTimeoutError.default_message)
            except asyncio.CancelledError:
                # Caller went away; the stage still finishes on its own.
                task.add_done_callback(self._late_result_logger(stage.name))
                raise

    async def _invoke(self, stage: Stage, context: RequestContext) -> Outcome:
        try:
            return await stage.run(context)
        except Exception as exc:
            return failure_from_exception(exc)

    def _late_result_logger(self, stage_name: str) -> Callable[["asyncio.Future[Outcome]"], None]:
        def _log(task: "asyncio.Future[Outcome]") -> None:
            if task.cancelled():
                return
            outcome = task.result()
            self.logger.info(
                "Discarded late stage result",
                stage=stage_name,
                failed=outcome is not None,
            )
        return _log

    def _success_response(self, context: RequestContext) -> PipelineResponse:
        result = context.result
        if isinstance(result, HandlerResult):
            envelope = SuccessEnvelope(data=result.data, message=result.message)
            status_code = result.status_code
        else:
            envelope = SuccessEnvelope(data=result)
            status_code = 200

        return PipelineResponse(
            status_code=status_code,
            envelope=envelope,
            headers=self._rate_limit_headers(context.rate_limit),
        )

    def _failure_response(self, failure: Failure, context: Optional[RequestContext]) -> PipelineResponse:
        status_code, envelope = self.translator.translate(failure)
        headers = self._rate_limit_headers(context.rate_limit if context is not None else None)

        retry_after = None
        if failure.kind is FailureKind.RATE_LIMIT_EXCEEDED and failure.has_retry_hint:
            retry_after = failure.retry_after_seconds
            headers["Retry-After"] = str(max(1, math.ceil(retry_after)))

        return PipelineResponse(
            status_code=status_code,
            envelope=envelope,
            headers=headers,
            retry_after_seconds=retry_after,
        )

    def _rate_limit_headers(self, decision: Optional[Decision]) -> Dict[str, str]:
        """Propagate rate limiting metadata via standard headers."""
        if decision is None:
            return {}
        return {
            "X-RateLimit-Limit": str(int(decision.limit)),
            "X-RateLimit-Remaining": str(decision.remaining),
        }
