"""EIP-191 ``personal_sign`` signature recovery and address validation."""

from __future__ import annotations

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import is_address

from walletgate.service.errors import MalformedSignature, RecoveryFailure

SIGNATURE_LENGTH = 65


def normalize_address(address: str) -> str:
    return address.strip().lower()


def is_valid_address(address: object) -> bool:
    """True for a ``0x``-prefixed 20-byte hex address.

    All-lower and all-upper forms are accepted as-is; mixed case must carry a
    valid EIP-55 checksum.
    """
    if not isinstance(address, str):
        return False
    candidate = address.strip()
    if candidate[:2].lower() != "0x":
        return False
    return is_address(candidate)


def decode_signature(signature_hex: str) -> tuple[int, int, int]:
    """Split a hex signature into ``(v, r, s)`` with ``v`` normalised to 0/1.

    Bad hex or a wrong length is a ``MalformedSignature``; a well-formed
    signature whose ``v`` is no recovery id cannot recover and raises
    ``RecoveryFailure``.
    """
    if not isinstance(signature_hex, str):
        raise MalformedSignature()
    raw = signature_hex.strip()
    if raw[:2].lower() == "0x":
        raw = raw[2:]
    try:
        sig = bytes.fromhex(raw)
    except ValueError as exc:
        raise MalformedSignature("signature is not valid hex") from exc
    if len(sig) != SIGNATURE_LENGTH:
        raise MalformedSignature(
            "signature must be 65 bytes", detail={"length": len(sig)}
        )
    r = int.from_bytes(sig[:32], "big")
    s = int.from_bytes(sig[32:64], "big")
    v = sig[64]
    # Wallets emit 27/28; the curve recovery id is 0/1.
    if v in (27, 28):
        v -= 27
    if v not in (0, 1):
        raise RecoveryFailure("invalid recovery id", detail={"v": sig[64]})
    return v, r, s


def recover_address(message: str, signature_hex: str) -> str:
    """Return the lower-cased address that produced ``signature_hex`` over ``message``."""
    v, r, s = decode_signature(signature_hex)
    signable = encode_defunct(text=message)
    try:
        recovered = Account.recover_message(signable, vrs=(v + 27, r, s))
    except (BadSignature, KeyValidationError, ValueError) as exc:
        raise RecoveryFailure() from exc
    return recovered.lower()


__all__ = [
    "SIGNATURE_LENGTH",
    "decode_signature",
    "is_valid_address",
    "normalize_address",
    "recover_address",
]
