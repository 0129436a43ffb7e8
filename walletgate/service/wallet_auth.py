from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import Iterator, Optional

from walletgate.config import Settings
from walletgate.logging import get_logger
from walletgate.service.accounts import AccountResolver, AccountStore
from walletgate.service.errors import (
    AccountDisabled,
    AccountNotFound,
    AddressMismatch,
    ChainNotAllowed,
    FeatureDisabled,
    InvalidToken,
    MalformedAddress,
    MalformedSignature,
    NonceInvalid,
    SignatureMismatch,
    UnboundAddress,
    WalletAuthError,
)
from walletgate.service.nonce_store import Challenge, NonceStore
from walletgate.service.signature import is_valid_address, recover_address
from walletgate.service.tokens import IssuedToken, TokenCodec
from walletgate.storage.models import Session, User

logger = get_logger(__name__)


@dataclass
class WalletLoginResult:
    user: User
    session: Session
    token: IssuedToken


@dataclass
class RefreshResult:
    user: User
    session: Session
    token: IssuedToken


def strip_bearer(authorization: Optional[str]) -> str:
    """Drop a case-insensitive ``Bearer`` prefix and surrounding whitespace."""
    value = (authorization or "").strip()
    if value[:7].lower() == "bearer ":
        value = value[7:].strip()
    return value


class WalletAuthService:
    """Challenge issuance, signature login, wallet binding and token refresh.

    The nonce store is the only shared mutable state; store lookups and token
    signing never run while its lock is held.
    """

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        *,
        nonces: NonceStore,
        tokens: TokenCodec,
        accounts: AccountResolver,
    ) -> None:
        self.store = store
        self.settings = settings
        self.nonces = nonces
        self.tokens = tokens
        self.accounts = accounts
        self.allowed_chains = {str(c) for c in settings.wallet_allowed_chains}

    @contextlib.contextmanager
    def _audit(
        self, event: str, address: Optional[str], signature: Optional[str] = None
    ) -> Iterator[None]:
        """Log wallet failures with enough context for audit, never the signature."""
        try:
            yield
        except WalletAuthError as exc:
            logger.warning(
                f"{event}_failed",
                wallet_address=(address or "").strip().lower() or None,
                has_signature=bool(signature),
                error_type=type(exc).__name__,
                reason=exc.reason,
            )
            raise

    def _require_enabled(self) -> None:
        if not self.settings.wallet_login_enabled:
            raise FeatureDisabled()

    @staticmethod
    def _require_address(address: Optional[str]) -> str:
        if not address or not is_valid_address(address):
            raise MalformedAddress(detail={"wallet_address": address})
        return address.strip()

    def _check_chain(self, chain_id: Optional[str]) -> None:
        if self.allowed_chains and chain_id and str(chain_id) not in self.allowed_chains:
            raise ChainNotAllowed(detail={"chain_id": str(chain_id)})

    def _verified_challenge(
        self,
        address: str,
        signature: Optional[str],
        nonce: Optional[str],
        chain_id: Optional[str],
    ) -> Challenge:
        """Run the shared checks of verify and bind without consuming anything."""
        if not signature or not signature.strip():
            raise MalformedSignature("signature is required")
        self._check_chain(chain_id)
        challenge = self.nonces.get_challenge(address)
        if challenge is None:
            raise NonceInvalid("nonce missing or expired")
        if nonce and nonce != challenge.nonce:
            raise NonceInvalid("nonce mismatch")
        recovered = recover_address(challenge.message, signature)
        if recovered != address.lower():
            raise SignatureMismatch()
        return challenge

    async def issue_challenge(
        self, address: Optional[str], chain_id: Optional[str] = None
    ) -> Challenge:
        with self._audit("wallet_challenge", address):
            self._require_enabled()
            address = self._require_address(address)
            if not self.accounts.is_eligible(address):
                raise UnboundAddress(
                    "wallet not bound to an account and auto-registration is disabled",
                    detail={"wallet_address": address.lower()},
                )
            challenge = self.nonces.issue_challenge(
                address,
                self.settings.wallet_message_prefix,
                str(chain_id) if chain_id else None,
            )
        logger.info(
            "wallet_challenge_issued",
            wallet_address=challenge.address,
            chain_id=chain_id,
            expires_at=challenge.expires_at.isoformat(),
        )
        return challenge

    async def verify(
        self,
        address: Optional[str],
        signature: Optional[str],
        nonce: Optional[str] = None,
        chain_id: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> WalletLoginResult:
        with self._audit("wallet_verify", address, signature):
            self._require_enabled()
            address = self._require_address(address)
            self._verified_challenge(address, signature, nonce, chain_id)
            user = self.accounts.find_or_create(address)
            if not user.is_enabled:
                raise AccountDisabled(detail={"status": user.status})
            self.tokens.ensure_configured()
            self.nonces.consume_challenge(address)
            session = self.store.create_session(
                user.id,
                ttl_minutes=self.settings.session_ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                meta={"login_method": "wallet"},
            )
            token = self.tokens.issue(user.id, user.wallet_address or address)
        logger.info(
            "wallet_login_success",
            user_id=user.id,
            wallet_address=address.lower(),
            role=user.role,
            expires_at=token.expires_at.isoformat(),
        )
        return WalletLoginResult(user=user, session=session, token=token)

    async def bind(
        self,
        user_id: str,
        address: Optional[str],
        signature: Optional[str],
        nonce: Optional[str] = None,
        chain_id: Optional[str] = None,
    ) -> User:
        with self._audit("wallet_bind", address, signature):
            self._require_enabled()
            address = self._require_address(address)
            self._verified_challenge(address, signature, nonce, chain_id)
            user = self.accounts.bind(user_id, address)
            self.nonces.consume_challenge(address)
        return user

    async def refresh(
        self,
        authorization: Optional[str],
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> RefreshResult:
        raw = strip_bearer(authorization)
        with self._audit("wallet_refresh", None):
            if not raw:
                raise InvalidToken("missing token")
            claims = self.tokens.verify(raw)
            user = self.store.get_user(claims.user_id)
            if user is None:
                raise AccountNotFound(detail={"user_id": claims.user_id})
            bound = (user.wallet_address or "").lower()
            if not bound or bound != claims.wallet_address.lower():
                raise AddressMismatch()
            if not user.is_enabled:
                raise AccountDisabled(detail={"status": user.status})
            session = self.store.create_session(
                user.id,
                ttl_minutes=self.settings.session_ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                meta={"login_method": "wallet_refresh"},
            )
            token = self.tokens.issue(user.id, bound)
        logger.info(
            "wallet_refresh_success",
            user_id=user.id,
            wallet_address=bound,
            expires_at=token.expires_at.isoformat(),
        )
        return RefreshResult(user=user, session=session, token=token)
