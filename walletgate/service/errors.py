from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class WalletAuthError(ServiceError):
    """Mixin-style base for wallet flow failures.

    ``reason`` is a stable, caller-understandable code echoed in the
    response ``details`` so clients can branch without parsing messages.
    """

    reason: str = "wallet_error"
    default_message: str = "wallet authentication failed"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[dict] = None):
        merged = {"reason": self.reason}
        if detail:
            merged.update(detail)
        super().__init__(message or self.default_message, detail=merged)


class FeatureDisabled(WalletAuthError, ForbiddenError):
    reason = "feature_disabled"
    default_message = "wallet login is disabled"


class MalformedAddress(WalletAuthError, ValidationError):
    reason = "malformed_address"
    default_message = "invalid wallet address"


class MalformedSignature(WalletAuthError, ValidationError):
    reason = "malformed_signature"
    default_message = "invalid signature encoding"


class NonceInvalid(WalletAuthError, AuthenticationError):
    reason = "nonce_invalid"
    default_message = "nonce missing, expired or mismatched"


class ChainNotAllowed(WalletAuthError, ValidationError):
    reason = "chain_not_allowed"
    default_message = "chain id not allowed"


class SignatureMismatch(WalletAuthError, AuthenticationError):
    reason = "signature_mismatch"
    default_message = "signature does not match address"


class RecoveryFailure(SignatureMismatch):
    """The signature does not correspond to a recoverable public key."""

    reason = "recovery_failure"
    default_message = "signature recovery failed"


class UnboundAddress(WalletAuthError, ForbiddenError):
    reason = "unbound_address"
    default_message = "wallet address is not bound to an account"


class AddressAlreadyBound(WalletAuthError, ConflictError):
    reason = "address_already_bound"
    default_message = "wallet address already bound to another account"


class AccountDisabled(WalletAuthError, ForbiddenError):
    reason = "account_disabled"
    default_message = "account is disabled"


class AccountNotFound(WalletAuthError, NotFoundError):
    reason = "account_not_found"
    default_message = "account not found"


class SecretNotConfigured(WalletAuthError, ServerError):
    reason = "secret_not_configured"
    default_message = "wallet jwt secret not configured"


class TokenConfigError(SecretNotConfigured):
    reason = "token_expiry_not_configured"
    default_message = "wallet jwt expiry not configured"


class InvalidToken(WalletAuthError, AuthenticationError):
    reason = "invalid_token"
    default_message = "invalid or expired token"


class AddressMismatch(WalletAuthError, AuthenticationError):
    reason = "address_mismatch"
    default_message = "token wallet address no longer matches account"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "WalletAuthError",
    "FeatureDisabled",
    "MalformedAddress",
    "MalformedSignature",
    "NonceInvalid",
    "ChainNotAllowed",
    "SignatureMismatch",
    "RecoveryFailure",
    "UnboundAddress",
    "AddressAlreadyBound",
    "AccountDisabled",
    "AccountNotFound",
    "SecretNotConfigured",
    "TokenConfigError",
    "InvalidToken",
    "AddressMismatch",
]
