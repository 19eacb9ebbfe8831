"""
HTTP binding for the admission pipeline.

Wraps a :class:`~service_admission.app.pipeline.Pipeline` in a FastAPI
application: every registered route goes through the pipeline and every
response, including framework-level failures, is an envelope.
"""

import asyncio
import json
import math
import time
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import uvicorn
from fastapi import FastAPI, Request as HTTPRequest, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.config import AdmissionConfig, get_config
from shared.envelope import ErrorBody, ErrorEnvelope
from shared.errors import Failure, FailureKind, NotFoundError
from shared.logging import configure_logging, get_logger
from shared.metrics import get_metrics_collector

from .auth.authenticator import CredentialVerifier
from .auth.jwks import JWKSVerifier
from .domain.models import Request, RouteConfig
from .lifecycle.shutdown import ShutdownState
from .pipeline.pipeline import Pipeline, PipelineResponse
from .pipeline.stages import Handler
from .ratelimit.token_bucket import TokenBucketRateLimiter

BODY_METHODS = {"POST", "PUT", "PATCH"}
MALFORMED_BODY_MESSAGE = "Request body is not valid JSON"


class DrainingServer(uvicorn.Server):
    """uvicorn server that starts the pipeline drain as soon as an exit signal arrives."""

    def __init__(self, config: uvicorn.Config, service: "AdmissionService"):
        super().__init__(config)
        self.service = service

    def handle_exit(self, sig, frame):
        self.service.pipeline.shutdown.begin_drain()
        super().handle_exit(sig, frame)


class AdmissionService:
    """FastAPI service fronted by the admission pipeline."""

    def __init__(
        self,
        config: Optional[AdmissionConfig] = None,
        verifier: Optional[CredentialVerifier] = None,
        *,
        pipeline: Optional[Pipeline] = None,
    ):
        self.config = config or get_config()
        self.service_name = self.config.service_name
        configure_logging(self.service_name, self.config.log_level, self.config.log_format)
        self.logger = get_logger(f"{self.service_name}.service")
        self.metrics = get_metrics_collector(self.service_name)

        self._closers: List[Callable[[], Awaitable[None]]] = []
        if verifier is None:
            verifier = self._default_verifier()
        self.pipeline = pipeline or Pipeline.from_config(self.config, verifier, metrics=self.metrics)
        self._eviction_task: Optional[asyncio.Task] = None
        self._start_time = time.time()

        self.app = self._create_app()
        self._setup_routes()

    def _default_verifier(self) -> CredentialVerifier:
        if not self.config.jwks_url:
            raise ValueError("A credential verifier or ADMISSION_JWKS_URL is required")
        verifier = JWKSVerifier(
            self.config.jwks_url,
            audience=self.config.jwks_audience,
            issuer=self.config.jwks_issuer,
        )
        self._closers.append(verifier.close)
        return verifier

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self._startup()
            try:
                yield
            finally:
                await self._shutdown()

        return FastAPI(
            title=f"{self.service_name.title()} Service",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url=None,
            lifespan=lifespan,
        )

    async def _startup(self) -> None:
        limiter = self.pipeline.rate_limiter
        if isinstance(limiter, TokenBucketRateLimiter):
            self._eviction_task = asyncio.create_task(
                limiter.eviction_loop(
                    self.config.rate_limit.sweep_interval_seconds,
                    on_sweep=self.metrics.set_bucket_count,
                )
            )
        warmup = getattr(self.pipeline.authenticator.verifier, "warmup", None)
        if warmup is not None:
            await warmup()
        self.logger.info("Service started", service=self.service_name)

    async def _shutdown(self) -> None:
        state = await self.pipeline.shutdown.wait_for_drain()
        self.logger.info("Pipeline drained", state=state.value)

        if self._eviction_task is not None:
            self._eviction_task.cancel()
            try:
                await self._eviction_task
            except asyncio.CancelledError:
                pass
            self._eviction_task = None

        close = getattr(self.pipeline.rate_limiter, "close", None)
        if close is not None:
            await close()
        for closer in self._closers:
            await closer()

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            shutdown = self.pipeline.shutdown.describe()
            status = "ok" if shutdown["state"] == ShutdownState.RUNNING.value else "draining"
            self.metrics.record_health_check(status)
            return JSONResponse(
                status_code=200 if status == "ok" else 503,
                content={
                    "service": self.service_name,
                    "status": status,
                    "uptime_seconds": time.time() - self._start_time,
                    "shutdown": shutdown,
                    "version": "1.0.0",
                },
            )

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(content=self.metrics.render(), media_type=CONTENT_TYPE_LATEST)

        @self.app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(request: HTTPRequest, exc: StarletteHTTPException):
            """Keep framework errors (404 on unknown paths, 405) in envelope form."""
            if exc.status_code == 404:
                status_code, envelope = self.pipeline.translator.translate(
                    Failure(FailureKind.NOT_FOUND, NotFoundError.default_message)
                )
            else:
                status_code = exc.status_code
                envelope = ErrorEnvelope(error=ErrorBody(code=status_code, message=str(exc.detail)))
            return JSONResponse(status_code=status_code, content=envelope.to_wire(), headers=exc.headers)

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: HTTPRequest, exc: Exception):
            """Handle general exceptions."""
            status_code, envelope = self.pipeline.translator.translate(exc)
            return JSONResponse(status_code=status_code, content=envelope.to_wire())

    def route(
        self,
        method: str,
        path: str,
        *,
        name: Optional[str] = None,
        auth_required: Optional[bool] = None,
        required_scopes: Iterable[str] = (),
        body_schema=None,
        query_schema=None,
        timeout_seconds: Optional[float] = None,
    ) -> Callable[[Handler], Handler]:
        """Register ``handler`` for ``method path`` behind the pipeline."""
        route_config = RouteConfig(
            name=name or f"{method.upper()} {path}",
            auth_required=auth_required,
            required_scopes=frozenset(required_scopes),
            body_schema=body_schema,
            query_schema=query_schema,
            timeout_seconds=timeout_seconds,
        )

        def decorator(handler: Handler) -> Handler:
            async def endpoint(request: HTTPRequest) -> JSONResponse:
                return await self.dispatch(request, route_config, handler)

            self.app.add_api_route(path, endpoint, methods=[method.upper()], name=route_config.name)
            return handler

        return decorator

    async def dispatch(self, http_request: HTTPRequest, route_config: RouteConfig, handler: Handler) -> JSONResponse:
        """Convert the starlette request, run the pipeline and serialize the envelope."""
        request = await self._to_pipeline_request(http_request)
        response = await self.pipeline.handle(request, route_config, handler)
        return self._to_http_response(response)

    async def _to_pipeline_request(self, http_request: HTTPRequest) -> Request:
        body: Any = None
        body_error: Optional[str] = None
        if http_request.method.upper() in BODY_METHODS:
            raw = await http_request.body()
            if raw:
                try:
                    body = json.loads(raw)
                except ValueError:
                    body_error = MALFORMED_BODY_MESSAGE

        query: Dict[str, Any] = {}
        for key in http_request.query_params.keys():
            values = http_request.query_params.getlist(key)
            query[key] = values[0] if len(values) == 1 else values

        return Request(
            method=http_request.method,
            path=http_request.url.path,
            headers=dict(http_request.headers),
            query=query,
            body=body,
            client_host=http_request.client.host if http_request.client else None,
            body_error=body_error,
        )

    def _to_http_response(self, response: PipelineResponse) -> JSONResponse:
        return JSONResponse(
            status_code=response.status_code,
            content=jsonable_encoder(response.to_wire()),
            headers=response.headers,
        )

    def run(self):
        """Run the service."""
        server_config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
            timeout_graceful_shutdown=math.ceil(self.config.shutdown.drain_timeout_seconds),
        )
        DrainingServer(server_config, self).run()
