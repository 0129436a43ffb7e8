from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Optional

from walletgate.logging import get_logger
from walletgate.service.errors import InvalidToken, SecretNotConfigured, TokenConfigError

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WalletClaims:
    user_id: str
    wallet_address: str
    issued_at: datetime
    not_before: datetime
    expires_at: datetime

    @property
    def subject(self) -> str:
        return self.wallet_address


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


class TokenCodec:
    """HS256 bearer tokens with ordered fallback secrets.

    New tokens are always signed with the primary secret. Verification tries
    the primary secret and then each fallback in order, so a retired secret
    kept in the fallback list keeps its tokens valid until they expire.
    """

    def __init__(
        self,
        secret: Optional[str],
        *,
        fallback_secrets: Iterable[str] = (),
        expire_hours: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.secret = secret or ""
        self.fallback_secrets: List[str] = [s for s in fallback_secrets if s]
        self.expire_hours = expire_hours
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, secret: str, signing_input: str) -> str:
        digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def ensure_configured(self) -> None:
        """Fail fast when tokens cannot be issued with the current settings."""
        if not self.secret:
            raise SecretNotConfigured()
        if not self.expire_hours or self.expire_hours <= 0:
            raise TokenConfigError()

    def issue(self, user_id: str, wallet_address: str) -> IssuedToken:
        self.ensure_configured()
        now = self._clock()
        expires_at = now + timedelta(hours=self.expire_hours)
        address = wallet_address.lower()
        payload = {
            "user_id": user_id,
            "wallet_address": address,
            "sub": address,
            "iat": int(now.timestamp()),
            "nbf": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(self.secret, signing_input)}"
        return IssuedToken(
            token=token,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def verify(self, token: str) -> WalletClaims:
        parts = self._split(token)
        if parts is None:
            raise InvalidToken()
        header_b64, payload_b64, sig_b64 = parts
        signing_input = f"{header_b64}.{payload_b64}"
        now = self._clock()
        for secret in [self.secret, *self.fallback_secrets]:
            if not secret:
                continue
            if not hmac.compare_digest(self._sign(secret, signing_input), sig_b64):
                continue
            claims = self._claims_from_payload(payload_b64)
            if claims is not None and claims.not_before <= now < claims.expires_at:
                return claims
        raise InvalidToken()

    def _split(self, token: str) -> Optional[tuple[str, str, str]]:
        if not token or token.count(".") != 2:
            return None
        # base64url segments are ASCII; compare_digest raises on anything else
        if not token.isascii():
            logger.warning("wallet_token_non_ascii")
            return None
        header_b64, payload_b64, sig_b64 = token.split(".")
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("wallet_token_header_decode_failed")
            return None
        # Reject alg confusion before any secret is tried
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "wallet_token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None
        return header_b64, payload_b64, sig_b64

    def _claims_from_payload(self, payload_b64: str) -> Optional[WalletClaims]:
        try:
            payload: dict[str, Any] = json.loads(self._decode_segment(payload_b64))
            user_id = str(payload["user_id"])
            address = str(payload["wallet_address"])
            iat = float(payload.get("iat", 0))
            nbf = float(payload.get("nbf", iat))
            exp = float(payload["exp"])
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("wallet_token_payload_invalid", error=str(exc))
            return None
        return WalletClaims(
            user_id=user_id,
            wallet_address=address,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            not_before=datetime.fromtimestamp(nbf, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )
