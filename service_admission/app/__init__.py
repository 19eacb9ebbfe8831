"""
Admission Service package.

Every request passes an ordered chain of interceptors before business
logic runs:
- Rate limiting: per-client token buckets, shed load first
- Authentication: bearer credential checked by an injected verifier
- Validation: pydantic request schemas, all violations reported at once
- Handler dispatch, with every failure translated into one error envelope

Structure:
- app.main: FastAPI binding, health/metrics routes, drain-aware server.
- app.pipeline: Pipeline orchestration and its stages.
- app.ratelimit: In-memory and Redis token buckets.
- app.auth: Authenticator and JWKS verifier.
- app.validation: Request schemas and the validator.
- app.identity: Client key derivation.
- app.lifecycle: Shutdown coordination.
- app.domain: Request/context records and error translation.
"""
