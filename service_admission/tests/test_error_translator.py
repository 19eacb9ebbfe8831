"""
Unit tests for ErrorTranslator.
"""

import pytest

from service_admission.app.domain.error_translator import INTERNAL_ERROR_MESSAGE, ErrorTranslator
from shared.errors import (
    Failure,
    FailureKind,
    ForbiddenError,
    NotFoundError,
    RateLimitExceededError,
    Violation,
)


class TestErrorTranslator:
    """Test cases for ErrorTranslator."""

    @pytest.fixture
    def translator(self, metrics):
        return ErrorTranslator(metrics)

    @pytest.mark.parametrize("kind,status_code", [
        (FailureKind.RATE_LIMIT_EXCEEDED, 429),
        (FailureKind.UNAUTHORIZED, 401),
        (FailureKind.FORBIDDEN, 403),
        (FailureKind.VALIDATION_FAILED, 400),
        (FailureKind.NOT_FOUND, 404),
        (FailureKind.TIMEOUT, 504),
        (FailureKind.SHUTTING_DOWN, 503),
        (FailureKind.UNHANDLED, 500),
    ])
    def test_status_mapping(self, translator, kind, status_code):
        status, envelope = translator.translate(Failure(kind, "message"))

        assert status == status_code
        assert envelope.success is False
        assert envelope.error.code == status_code

    def test_validation_failure_carries_details(self, translator):
        failure = Failure(
            FailureKind.VALIDATION_FAILED,
            "Request validation failed",
            violations=(Violation("age", "Input should be a valid integer"),),
        )

        status, envelope = translator.translate(failure)

        assert status == 400
        assert envelope.to_wire() == {
            "success": False,
            "error": {
                "code": 400,
                "message": "Request validation failed",
                "details": [{"field": "age", "message": "Input should be a valid integer"}],
            },
        }

    def test_non_validation_failure_omits_details(self, translator):
        _, envelope = translator.translate(Failure(FailureKind.UNAUTHORIZED, "Invalid token"))

        assert envelope.to_wire() == {
            "success": False,
            "error": {"code": 401, "message": "Invalid token"},
        }

    def test_admission_errors_translate_by_kind(self, translator):
        assert translator.translate(NotFoundError("Order not found"))[0] == 404
        assert translator.translate(ForbiddenError())[1].error.message == "Insufficient permissions"
        assert translator.translate(RateLimitExceededError(retry_after_seconds=2))[0] == 429

    def test_unexpected_exception_hides_its_message(self, translator, metrics):
        status, envelope = translator.translate(RuntimeError("password=hunter2 at db.internal"))

        assert status == 500
        assert envelope.error.message == INTERNAL_ERROR_MESSAGE
        assert "hunter2" not in str(envelope.to_wire())
        assert metrics.sample("pipeline_failures_total", kind="UNHANDLED") == 1.0

    def test_unhandled_failure_message_is_replaced(self, translator):
        _, envelope = translator.translate(Failure(FailureKind.UNHANDLED, "KeyError: 'secret'"))

        assert envelope.error.message == INTERNAL_ERROR_MESSAGE

    def test_rejections_are_counted(self, translator, metrics):
        translator.translate(Failure(FailureKind.FORBIDDEN, "nope"))
        translator.translate(Failure(FailureKind.FORBIDDEN, "nope"))

        assert metrics.sample("pipeline_failures_total", kind="FORBIDDEN") == 2.0

    def test_works_without_metrics(self):
        status, _ = ErrorTranslator().translate(Failure(FailureKind.TIMEOUT, "Request timed out"))

        assert status == 504
