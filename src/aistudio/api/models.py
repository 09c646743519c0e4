"""Pydantic request and response models for the AI Studio API.

FastAPI uses these models for request validation, serialisation and the
OpenAPI schema.  Fields are snake_case in Python and camelCase on the wire
(``image_upload`` <-> ``imageUpload``).

Models
------
SignupRequest / LoginRequest
    Payloads for ``POST /auth/signup`` and ``POST /auth/login``.
TokenResponse / UserResponse
    Auth responses.
GenerationCreate
    Payload for ``POST /generations``.
GenerationResponse
    One generation, as returned by ``POST`` and ``GET /generations``.
ErrorResponse
    Body of every non-2xx response.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from aistudio.core.image_store import is_data_url
from aistudio.core.orchestrator import GenerationResult

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt only considers the first 72 bytes of a password.
MAX_PASSWORD_BYTES = 72


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SignupRequest(BaseModel):
    """Request body for ``POST /auth/signup``.

    Attributes:
        email: Account email; must be unique.
        password: At least 6 characters and at most 72 bytes.
    """

    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=254)
    password: str = Field(..., min_length=6)

    @field_validator("password")
    @classmethod
    def _password_fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
        return value


class LoginRequest(BaseModel):
    """Request body for ``POST /auth/login``."""

    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=254)
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    token: str


class UserResponse(BaseModel):
    id: int
    email: str


class GenerationCreate(_CamelModel):
    """Request body for ``POST /generations``.

    Attributes:
        prompt: Free-text description, non-empty after stripping.
        style: Style selection (e.g. ``"Classic"``), non-empty.
        image_upload: ``data:image/<type>;base64,<body>`` URL.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True
    )

    prompt: str = Field(..., min_length=1, max_length=2000)
    style: str = Field(..., min_length=1, max_length=100)
    image_upload: str = Field(..., min_length=1)

    @field_validator("image_upload")
    @classmethod
    def _must_be_data_url(cls, value: str) -> str:
        if not is_data_url(value):
            raise ValueError("imageUpload must be a base64 image data URL")
        return value


class GenerationResponse(_CamelModel):
    """A generation as seen by clients.

    ``image_url`` is ``None`` when the stored image no longer exists.
    """

    id: int
    prompt: str
    style: str
    image_url: str | None = None
    created_at: datetime
    status: str

    @classmethod
    def from_result(cls, result: GenerationResult) -> "GenerationResponse":
        return cls(
            id=result.id,
            prompt=result.prompt,
            style=result.style,
            image_url=result.image_url,
            created_at=result.created_at,
            status=result.status,
        )


class ErrorResponse(BaseModel):
    """Body of every error response."""

    message: str
    issues: list[dict] | None = None
