"""
Maps pipeline failures and handler exceptions onto error envelopes.
"""

from typing import Dict, Optional, Tuple, Union

from shared.envelope import ErrorBody, ErrorEnvelope, ViolationDetail
from shared.errors import AdmissionError, Failure, FailureKind, failure_from_exception
from shared.logging import get_logger
from shared.metrics import MetricsCollector

STATUS_BY_KIND: Dict[FailureKind, int] = {
    FailureKind.RATE_LIMIT_EXCEEDED: 429,
    FailureKind.UNAUTHORIZED: 401,
    FailureKind.FORBIDDEN: 403,
    FailureKind.VALIDATION_FAILED: 400,
    FailureKind.NOT_FOUND: 404,
    FailureKind.TIMEOUT: 504,
    FailureKind.SHUTTING_DOWN: 503,
    FailureKind.UNHANDLED: 500,
}

INTERNAL_ERROR_MESSAGE = AdmissionError.default_message


class ErrorTranslator:
    """Deterministic failure-kind to status/envelope mapping.

    500 responses always carry a fixed message; the underlying cause is
    logged with its traceback and never echoed to the client.
    """

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics
        self.logger = get_logger("admission.error_translator")

    def translate(self, failure: Union[Failure, BaseException]) -> Tuple[int, ErrorEnvelope]:
        if not isinstance(failure, Failure):
            failure = failure_from_exception(failure)

        status_code = STATUS_BY_KIND.get(failure.kind, 500)
        if status_code == 500:
            return status_code, self._internal_error(failure)

        message = failure.message or INTERNAL_ERROR_MESSAGE
        details = None
        if failure.kind is FailureKind.VALIDATION_FAILED:
            details = [ViolationDetail.from_violation(violation) for violation in failure.violations]

        self.logger.info(
            "Request rejected",
            kind=failure.kind.value,
            status_code=status_code,
            message=message,
        )
        self._record(failure.kind)
        return status_code, ErrorEnvelope(error=ErrorBody(code=status_code, message=message, details=details))

    def _internal_error(self, failure: Failure) -> ErrorEnvelope:
        cause = failure.cause
        if cause is not None:
            self.logger.error(
                "Unhandled failure",
                kind=failure.kind.value,
                error_type=type(cause).__name__,
                error=str(cause),
                exc_info=(type(cause), cause, cause.__traceback__),
            )
        else:
            self.logger.error("Unhandled failure", kind=failure.kind.value, error=failure.message)
        self._record(FailureKind.UNHANDLED)
        return ErrorEnvelope(error=ErrorBody(code=500, message=INTERNAL_ERROR_MESSAGE))

    def _record(self, kind: FailureKind) -> None:
        if self.metrics is not None:
            self.metrics.record_failure(kind.value)
