"""
Request validation for the admission pipeline.
"""

from .validator import RequestSchema, ValidationResult, Validator

__all__ = [
    "RequestSchema",
    "ValidationResult",
    "Validator",
]
