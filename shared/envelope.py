"""
Response envelopes shared by every admission route.

A response is exactly one of :class:`SuccessEnvelope` or
:class:`ErrorEnvelope`. Field names are part of the wire contract.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel

from shared.errors import Violation


class ViolationDetail(BaseModel):
    """Field-level validation problem as sent to clients."""

    field: str
    message: str

    @classmethod
    def from_violation(cls, violation: Violation) -> "ViolationDetail":
        return cls(field=violation.field, message=violation.message)


class ErrorBody(BaseModel):
    """Body of the ``error`` member of an error envelope."""

    code: int
    message: str
    details: Optional[List[ViolationDetail]] = None


class SuccessEnvelope(BaseModel):
    """Standard success response format."""

    success: Literal[True] = True
    data: Any = None
    message: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": True, "data": self.data}
        if self.message is not None:
            payload["message"] = self.message
        return payload


class ErrorEnvelope(BaseModel):
    """Standard error response format."""

    success: Literal[False] = False
    error: ErrorBody

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


Envelope = Union[SuccessEnvelope, ErrorEnvelope]
