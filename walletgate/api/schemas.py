from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "validation_error",
        "conflict",
        "server_error",
    }
)

MAX_ADDRESS_LENGTH = 64
MAX_SIGNATURE_LENGTH = 200


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
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_chain_id(value: Union[str, int, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("chain_id must be a string or integer")
    text = str(value).strip()
    return text or None


class WalletChallengeRequest(BaseModel):
    address: str = Field(..., max_length=MAX_ADDRESS_LENGTH)
    chain_id: Optional[Union[str, int]] = Field(default=None)

    @field_validator("chain_id", mode="before")
    @classmethod
    def _chain_id(cls, value: Union[str, int, None]) -> Optional[str]:
        return _normalize_chain_id(value)


class WalletChallengeResponse(BaseModel):
    nonce: str
    message: str
    address: str
    expires_at: str


class WalletVerifyRequest(BaseModel):
    address: str = Field(..., max_length=MAX_ADDRESS_LENGTH)
    signature: str = Field(..., max_length=MAX_SIGNATURE_LENGTH)
    nonce: Optional[str] = Field(default=None, max_length=128)
    chain_id: Optional[Union[str, int]] = Field(default=None)

    @field_validator("chain_id", mode="before")
    @classmethod
    def _chain_id(cls, value: Union[str, int, None]) -> Optional[str]:
        return _normalize_chain_id(value)


class WalletBindRequest(WalletVerifyRequest):
    nonce: str = Field(..., min_length=1, max_length=128)


class WalletUserSummary(BaseModel):
    id: str
    username: str
    wallet_address: Optional[str] = None
    role: str
    status: str


class WalletVerifyResponse(BaseModel):
    token: str
    expires_at: str
    session_expires_at: datetime
    user: WalletUserSummary


class WalletBindResponse(BaseModel):
    bound: bool = True
    wallet_address: str


class WalletRefreshResponse(BaseModel):
    token: str
    expires_at: str


class StatusResponse(BaseModel):
    system_name: str
    wallet_login: bool
    wallet_auto_register: bool
    wallet_allowed_chains: List[str] = Field(default_factory=list)


class UserResponse(BaseModel):
    id: str
    username: str
    display_name: Optional[str] = None
    role: str
    status: str
    wallet_address: Optional[str] = None
    created_at: datetime
