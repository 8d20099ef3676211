"""
Request body models.

Each `parse_*` helper turns a raw JSON body into a model or raises
ValidationError with per-field messages.
"""

import re
from typing import Any, Dict, List, Type, TypeVar

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from .password import PasswordManager
from .permissions import Role


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
NAME_PATTERN = re.compile(r"^[a-zA-Z\s\-']+$")

Model = TypeVar("Model", bound=BaseModel)


def _normalize_email(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip().lower()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email format")
    return value


class LoginRequest(BaseModel):
    email: str = Field(max_length=255)
    password: str = Field(min_length=1)

    normalize_email = field_validator("email", mode="before")(_normalize_email)


class RegisterRequest(BaseModel):
    first_name: str = Field(alias="firstName", min_length=1, max_length=100)
    last_name: str = Field(alias="lastName", min_length=1, max_length=100)
    email: str = Field(max_length=255)
    password: str = Field(min_length=1)

    normalize_email = field_validator("email", mode="before")(_normalize_email)

    @field_validator("first_name", "last_name")
    @classmethod
    def check_name(cls, value: str) -> str:
        value = value.strip()
        if not value or not NAME_PATTERN.match(value):
            raise ValueError("Name may only contain letters, spaces, hyphens and apostrophes")
        return value


class RoleAssignment(BaseModel):
    user_id: str = Field(alias="userId", min_length=1)
    role_id: int = Field(alias="roleId", ge=int(min(Role)), le=int(max(Role)))


class PasswordResetRequest(BaseModel):
    email: str = Field(max_length=255)

    normalize_email = field_validator("email", mode="before")(_normalize_email)


def _field_errors(exc: PydanticValidationError) -> Dict[str, List[str]]:
    errors: Dict[str, List[str]] = {}
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"]) or "body"
        message = error["msg"]
        # pydantic prefixes messages raised from validators
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.setdefault(field, []).append(message)
    return errors


def parse_body(model: Type[Model], data: Any) -> Model:
    """
    Validate a JSON body against a model.

    Raises:
        ValidationError: With field name -> messages in `details`
    """
    if not isinstance(data, dict):
        raise ValidationError("Validation failed", details={"body": ["Expected a JSON object"]})
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError("Validation failed", details=_field_errors(e)) from e


def parse_registration(data: Any) -> RegisterRequest:
    """
    Validate a registration body, including every password-strength rule.

    Raises:
        ValidationError: With all field errors, password rules under "password"
    """
    errors: Dict[str, List[str]] = {}
    request = None
    try:
        request = parse_body(RegisterRequest, data)
    except ValidationError as e:
        errors = e.details

    password = data.get("password") if isinstance(data, dict) else None
    if isinstance(password, str):
        strength = PasswordManager.validate_strength(password)
        if not strength.is_valid:
            messages = errors.setdefault("password", [])
            messages.extend(m for m in strength.errors if m not in messages)

    if errors:
        raise ValidationError("Validation failed", details=errors)
    return request
