"""
Tagged-result validation for payloads that arrive as raw bytes or dicts
(webhooks) instead of through FastAPI's body parsing.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from core.exceptions import ValidationException

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class Ok(Generic[M]):
    value: M


@dataclass(frozen=True)
class Invalid:
    errors: Dict[str, str] = field(default_factory=dict)

    def raise_for_errors(self, message: str = "Validation failed"):
        raise ValidationException(message=message, errors=self.errors)


ValidationResult = Union[Ok[M], Invalid]


def validate_payload(schema: Type[M], data: Any) -> "ValidationResult[M]":
    """Parse ``data`` (bytes, str or dict) into ``schema`` without raising."""
    if isinstance(data, (bytes, bytearray, str)):
        try:
            data = json.loads(data or b"{}")
        except ValueError as e:
            return Invalid({"body": f"Invalid JSON: {e}"})

    try:
        return Ok(schema.model_validate(data))
    except ValidationError as e:
        errors = {}
        for error in e.errors():
            key = ".".join(str(loc) for loc in error["loc"]) or "body"
            errors[key] = error["msg"]
        return Invalid(errors)
