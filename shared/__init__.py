"""
Shared utilities for the admission pipeline.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Failure taxonomy and exception types
- envelope: Canonical success/error response envelopes

Do not import from service_* packages into shared/.
"""
