from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from walletgate.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CHALLENGE_TTL = timedelta(minutes=10)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339(value: datetime) -> str:
    """Second-precision UTC timestamp with a ``Z`` suffix."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Challenge:
    nonce: str
    message: str
    address: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


def build_login_message(
    prefix: str,
    nonce: str,
    address: str,
    issued_at: datetime,
    chain_id: Optional[str] = None,
) -> str:
    """Render the text a wallet signs with ``personal_sign``.

    The address keeps the caller's casing so the wallet prompt shows the
    checksummed form the user recognises.
    """
    lines = [
        prefix,
        f"Nonce: {nonce}",
        f"Address: {address}",
        f"Issued At: {format_rfc3339(issued_at)}",
    ]
    if chain_id:
        lines.append(f"ChainId: {chain_id}")
    return "\n".join(lines)


class NonceStore:
    """One outstanding login challenge per wallet address.

    Every read, write and sweep happens under a single lock. Expired entries
    are dropped lazily on each issuance and ignored on read, so nothing is
    ever returned past its expiry even if no sweep has run.
    """

    def __init__(
        self,
        ttl: timedelta = DEFAULT_CHALLENGE_TTL,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if ttl <= timedelta(0):
            ttl = DEFAULT_CHALLENGE_TTL
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._challenges: Dict[str, Challenge] = {}

    @staticmethod
    def _key(address: str) -> str:
        return address.strip().lower()

    def issue_challenge(
        self, address: str, message_prefix: str, chain_id: Optional[str] = None
    ) -> Challenge:
        now = self._clock()
        nonce = uuid.uuid4().hex
        challenge = Challenge(
            nonce=nonce,
            message=build_login_message(message_prefix, nonce, address, now, chain_id),
            address=self._key(address),
            issued_at=now,
            expires_at=now + self.ttl,
        )
        with self._lock:
            self._challenges[challenge.address] = challenge
            swept = self._sweep_locked(now)
        if swept:
            logger.debug("wallet_challenges_swept", removed=swept)
        return challenge

    def get_challenge(self, address: str) -> Optional[Challenge]:
        now = self._clock()
        with self._lock:
            challenge = self._challenges.get(self._key(address))
        if challenge is None or challenge.is_expired(now):
            return None
        return challenge

    def consume_challenge(self, address: str) -> None:
        with self._lock:
            self._challenges.pop(self._key(address), None)

    def sweep(self) -> int:
        """Drop every expired challenge and return how many were removed."""
        now = self._clock()
        with self._lock:
            return self._sweep_locked(now)

    def _sweep_locked(self, now: datetime) -> int:
        expired = [key for key, ch in self._challenges.items() if ch.is_expired(now)]
        for key in expired:
            del self._challenges[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._challenges)
