from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tokengate.service.email import is_valid_email

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "expired",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# -- admins ---------------------------------------------------------------


class AdminLoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class AdminRegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    username: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., max_length=128)
    confirm_password: str = Field(..., max_length=128)


class AdminUpdateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    username: str = Field(..., min_length=1, max_length=255)
    password: Optional[str] = Field(None, max_length=128)
    confirm_password: Optional[str] = Field(None, max_length=128)


class AdminResponse(BaseModel):
    id: str
    name: str
    username: str
    created_by: Optional[str] = None
    created_at: datetime


class AdminLoginResponse(BaseModel):
    admin: AdminResponse
    token: str


# -- email settings -------------------------------------------------------


class EmailSettingsUpdateRequest(BaseModel):
    host: str = Field(..., min_length=1, max_length=255)
    port: int = Field(..., ge=1, le=65535)
    username: str = Field(..., min_length=1, max_length=255)
    password: Optional[str] = Field(None, max_length=1024)
    use_tls: bool = True
    from_address: Optional[str] = Field(None, max_length=254)
    from_name: Optional[str] = Field(None, max_length=255)

    @field_validator("from_address")
    @classmethod
    def _validate_from_address(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        if not is_valid_email(value):
            raise ValueError("invalid email address")
        return value.strip()


class EmailSettingsResponse(BaseModel):
    host: Optional[str] = None
    port: int
    username: Optional[str] = None
    use_tls: bool
    from_address: Optional[str] = None
    from_name: str
    password_set: bool
    source: str


# -- login tokens ---------------------------------------------------------


class LoginTokenCreateRequest(BaseModel):
    email: str = Field(..., max_length=254)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        if not is_valid_email(value):
            raise ValueError("invalid email address")
        return value.strip().lower()


class LoginTokenCreateResponse(BaseModel):
    login_token_id: str
    handoff_token: str
    expires_at: datetime


class LoginTokenDecisionRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=2048)
    approve: bool


class LoginTokenDecisionResponse(BaseModel):
    login_token_id: str
    authorized: bool
    denied: bool


# -- users and sessions ---------------------------------------------------


class UserResponse(BaseModel):
    id: str
    email: str
    banned: bool
    created_at: datetime


class SessionResponse(BaseModel):
    id: str
    ip_address: str
    device: str
    disconnected: bool
    last_activity: datetime
    expires_at: datetime
    created_at: datetime


class UserAuthResponse(BaseModel):
    user: UserResponse
    session: SessionResponse
    token: Optional[str] = None
