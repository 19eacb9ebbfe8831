"""
Request, route and per-request context records passed through the pipeline.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Type

from pydantic import BaseModel

BODYLESS_STATUS_CODES = frozenset({204, 205})


@dataclass
class Request:
    """Parsed inbound request handed over by the HTTP listener.

    Header names are normalised to lower case so lookups are case-insensitive.
    ``body_error`` is set by the listener when the raw body could not be
    decoded; the validate stage reports it.
    """

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, Any] = field(default_factory=dict)
    body: Any = None
    client_host: Optional[str] = None
    body_error: Optional[str] = None

    def __post_init__(self):
        self.method = self.method.upper()
        self.headers = {str(name).lower(): value for name, value in dict(self.headers).items()}
        self.query = dict(self.query)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)


@dataclass(frozen=True)
class RouteConfig:
    """Per-route pipeline settings.

    ``auth_required`` and ``timeout_seconds`` fall back to service defaults
    when left as ``None``.
    """

    name: str = "default"
    auth_required: Optional[bool] = None
    required_scopes: FrozenSet[str] = frozenset()
    body_schema: Optional[Type[BaseModel]] = None
    query_schema: Optional[Type[BaseModel]] = None
    timeout_seconds: Optional[float] = None

    @property
    def declares_schema(self) -> bool:
        return self.body_schema is not None or self.query_schema is not None


@dataclass(frozen=True)
class Principal:
    """Authenticated caller produced by a credential verifier."""

    subject: str
    scopes: FrozenSet[str] = frozenset()
    claims: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass
class RequestContext:
    """Per-request state accumulated by the stages. Never shared."""

    request: Request
    route: RouteConfig
    request_id: str
    identity: str = "anonymous"
    principal: Optional[Principal] = None
    payload: Optional[BaseModel] = None
    query_params: Optional[BaseModel] = None
    result: Any = None
    rate_limit: Optional[Any] = None
    state: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HandlerResult:
    """Handler return value carrying an optional message and 2xx status."""

    data: Any = None
    message: Optional[str] = None
    status_code: int = 200

    def __post_init__(self):
        if not 200 <= self.status_code < 300:
            raise ValueError(f"HandlerResult status must be 2xx, got {self.status_code}")
        # Every success carries an envelope body, which these statuses forbid.
        if self.status_code in BODYLESS_STATUS_CODES:
            raise ValueError(f"HandlerResult status {self.status_code} cannot carry a response body")
