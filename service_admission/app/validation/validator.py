"""
Declarative request validation on top of pydantic models.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Set, Type, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from shared.config import UnknownFieldPolicy
from shared.errors import Violation
from shared.logging import get_logger


class RequestSchema(BaseModel):
    """Base class for request schemas.

    Strict by default: a value of the wrong type is a violation. A field opts
    into coercion (numeric strings to numbers and the like) with
    ``Field(strict=False)``. Unknown keys are dropped here; whether they are
    reported is the validator's policy.
    """

    model_config = ConfigDict(strict=True, extra="ignore", str_strip_whitespace=True)


@dataclass
class ValidationResult:
    """Either a normalized model instance or the full list of violations."""

    value: Optional[BaseModel] = None
    violations: List[Violation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations


def _format_loc(loc: Iterable[Union[str, int]], prefix: Optional[str] = None) -> str:
    parts = [str(part) for part in loc]
    if prefix:
        parts.insert(0, prefix)
    return ".".join(parts) if parts else (prefix or "body")


def _accepted_keys(schema: Type[BaseModel]) -> Set[str]:
    keys: Set[str] = set()
    for name, info in schema.model_fields.items():
        keys.add(name)
        if info.alias:
            keys.add(info.alias)
        if isinstance(info.validation_alias, str):
            keys.add(info.validation_alias)
    return keys


class Validator:
    """Applies a schema to request input and gathers every violation."""

    def __init__(self, unknown_field_policy: UnknownFieldPolicy = UnknownFieldPolicy.STRIP):
        self.unknown_field_policy = UnknownFieldPolicy(unknown_field_policy)
        self.logger = get_logger("admission.validator")

    def validate(self, schema: Type[BaseModel], data: Any, *, location: Optional[str] = None) -> ValidationResult:
        """Validate ``data`` against ``schema``.

        ``location`` prefixes violation paths (``"query"`` for query strings);
        body violations are reported by bare field path.
        """
        if data is None:
            data = {}

        if not isinstance(data, Mapping):
            return ValidationResult(
                violations=[Violation(location or "body", "Expected a JSON object")]
            )

        violations: List[Violation] = []

        if self.unknown_field_policy is UnknownFieldPolicy.REJECT:
            accepted = _accepted_keys(schema)
            for key in data:
                if key not in accepted:
                    violations.append(Violation(_format_loc([key], location), "Unknown field"))

        value: Optional[BaseModel] = None
        try:
            value = schema.model_validate(dict(data))
        except PydanticValidationError as exc:
            for error in exc.errors(include_url=False):
                violations.append(Violation(_format_loc(error["loc"], location), error["msg"]))

        if violations:
            self.logger.info(
                "Request validation failed",
                schema=schema.__name__,
                fields=[violation.field for violation in violations],
            )
            return ValidationResult(violations=violations)

        return ValidationResult(value=value)
