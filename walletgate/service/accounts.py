from __future__ import annotations

import secrets
import string
from typing import Iterable, List, Optional, Protocol, Set, Tuple

from argon2 import PasswordHasher, Type

from walletgate.logging import get_logger
from walletgate.service.errors import (
    AccountNotFound,
    AddressAlreadyBound,
    ConflictError,
    ServerError,
    UnboundAddress,
)
from walletgate.storage.errors import ConstraintViolation
from walletgate.storage.models import Session, User, UserRole, UserStatus

logger = get_logger(__name__)

WALLET_USERNAME_PREFIX = "wallet_"
_USERNAME_ALPHABET = string.ascii_lowercase + string.digits
_PASSWORD_ALPHABET = string.ascii_letters + string.digits
# Each pass can release at most one deleted owner; a store holding more stale
# rows than this for one address is corrupt and we stop rather than spin.
MAX_RELEASE_PASSES = 8
MAX_USERNAME_ATTEMPTS = 20


class AccountStore(Protocol):
    def create_user(
        self,
        username: str,
        *,
        display_name: Optional[str] = None,
        role: str = UserRole.USER.value,
        status: str = UserStatus.ENABLED.value,
        wallet_address: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_wallet(self, address: str) -> Optional[User]: ...

    def get_root_user(self) -> Optional[User]: ...

    def is_username_taken(self, username: str) -> bool: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def set_wallet_address(self, user_id: str, address: str) -> User: ...

    def clear_wallet_address(self, user_id: str) -> Optional[User]: ...

    def update_user_status(self, user_id: str, status: str) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...


def _random_string(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


class AccountResolver:
    """Maps verified wallet addresses onto accounts."""

    def __init__(
        self,
        store: AccountStore,
        *,
        root_allowed_addresses: Iterable[str] = (),
        auto_register: bool = False,
    ) -> None:
        self.store = store
        self.root_allowed: Set[str] = {a.strip().lower() for a in root_allowed_addresses if a}
        self.auto_register = auto_register
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def is_root_allowed(self, address: str) -> bool:
        return address.lower() in self.root_allowed

    def is_eligible(self, address: str) -> bool:
        """Whether a login challenge may be issued for ``address``."""
        if self.auto_register or self.is_root_allowed(address):
            return True
        owner = self.store.get_user_by_wallet(address.lower())
        return owner is not None and not owner.is_deleted

    def _current_owner(self, address: str) -> Optional[User]:
        """Live owner of ``address``, releasing bindings held by deleted accounts."""
        released: Set[str] = set()
        for _ in range(MAX_RELEASE_PASSES):
            owner = self.store.get_user_by_wallet(address)
            if owner is None or not owner.is_deleted:
                return owner
            if owner.id in released:
                break
            logger.info(
                "wallet_binding_released",
                user_id=owner.id,
                wallet_address=address,
            )
            self.store.clear_wallet_address(owner.id)
            released.add(owner.id)
        logger.error(
            "wallet_binding_release_stuck",
            wallet_address=address,
            released=len(released),
        )
        raise ServerError("wallet binding could not be released")

    def find_or_create(self, address: str) -> User:
        address = address.lower()
        owner = self._current_owner(address)
        if owner is not None:
            return owner

        if self.is_root_allowed(address):
            root = self.store.get_root_user()
            if root is not None:
                logger.info("wallet_root_bound", user_id=root.id, wallet_address=address)
                return self.store.set_wallet_address(root.id, address)
            logger.warning("wallet_root_user_missing", wallet_address=address)

        if self.auto_register:
            return self._register(address)

        raise UnboundAddress(detail={"wallet_address": address})

    def _register(self, address: str) -> User:
        password = _random_string(_PASSWORD_ALPHABET, 16)
        for _ in range(MAX_USERNAME_ATTEMPTS):
            username = WALLET_USERNAME_PREFIX + _random_string(_USERNAME_ALPHABET, 6)
            if self.store.is_username_taken(username):
                continue
            try:
                user = self.store.create_user(
                    username,
                    display_name=username,
                    role=UserRole.USER.value,
                    status=UserStatus.ENABLED.value,
                    wallet_address=address,
                )
            except ConstraintViolation as exc:
                if exc.field == "wallet_address":
                    # Another request registered this address first
                    winner = self.store.get_user_by_wallet(address)
                    if winner is not None and not winner.is_deleted:
                        return winner
                    raise
                continue
            digest, algo = self._hash_password(password)
            self.store.save_password(user.id, digest, algo)
            logger.info(
                "wallet_user_registered",
                user_id=user.id,
                username=username,
                wallet_address=address,
            )
            return user
        raise ServerError("could not allocate a wallet username")

    def ensure_root(
        self,
        username: str,
        password: str,
        *,
        wallet_address: Optional[str] = None,
    ) -> Tuple[User, str]:
        """Create or promote the root account; returns the user and what changed."""
        root = self.store.get_root_user()
        if root is not None and root.username != username:
            raise ConflictError(
                "a root account already exists", detail={"username": root.username}
            )
        if root is not None:
            status = "already_root"
        else:
            existing = self.store.get_user_by_username(username)
            if existing is not None:
                root = self.store.update_user_role(existing.id, UserRole.ROOT.value)
                status = "promoted"
            else:
                root = self.store.create_user(
                    username, display_name=username, role=UserRole.ROOT.value
                )
                status = "created"
            digest, algo = self._hash_password(password)
            self.store.save_password(root.id, digest, algo)
        if wallet_address:
            root = self.bind(root.id, wallet_address)
        logger.info("root_account_ensured", user_id=root.id, status=status)
        return root, status

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def bind(self, user_id: str, address: str) -> User:
        address = address.lower()
        caller = self.store.get_user(user_id)
        if caller is None:
            raise AccountNotFound(detail={"user_id": user_id})
        owner = self._current_owner(address)
        if owner is not None and owner.id != caller.id:
            if (caller.wallet_address or "").lower() != address:
                raise AddressAlreadyBound(detail={"wallet_address": address})
        try:
            user = self.store.set_wallet_address(caller.id, address)
        except ConstraintViolation as exc:
            raise AddressAlreadyBound(detail={"wallet_address": address}) from exc
        logger.info("wallet_bound", user_id=user.id, wallet_address=address)
        return user
