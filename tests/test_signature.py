"""Tests for personal_sign recovery and address validation."""

import pytest
from eth_account import Account

from conftest import sign_text
from walletgate.service.errors import MalformedSignature, RecoveryFailure, SignatureMismatch
from walletgate.service.signature import (
    decode_signature,
    is_valid_address,
    normalize_address,
    recover_address,
)

MESSAGE = "Login to walletgate-test\nNonce: abc123\nAddress: 0x0\nIssued At: 2026-03-01T12:00:00Z"


@pytest.fixture(scope="module")
def signer():
    return Account.create()


class TestAddressValidation:
    def test_accepts_lowercase(self, signer):
        assert is_valid_address(signer.address.lower())

    def test_accepts_checksummed(self, signer):
        assert is_valid_address(signer.address)

    def test_rejects_bad_checksum(self):
        # Valid EIP-55 address with one letter's case flipped
        assert not is_valid_address("0x52908400098527886E0F7030069857D2E4169Ee7")

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "0x",
            "52908400098527886e0f7030069857d2e4169ee7",
            "0x52908400098527886e0f7030069857d2e4169e",
            "0x52908400098527886e0f7030069857d2e4169ee7aa",
            "0xZZ908400098527886e0f7030069857d2e4169ee7",
            None,
            1234,
        ],
    )
    def test_rejects_malformed(self, value):
        assert not is_valid_address(value)

    def test_normalize_lowercases_and_strips(self):
        assert normalize_address("  0xABCdef  ") == "0xabcdef"


class TestDecodeSignature:
    def test_v_27_28_normalised(self, signer):
        signature = sign_text(signer, MESSAGE)
        v, r, s = decode_signature(signature)
        assert v in (0, 1)
        assert r > 0 and s > 0

    def test_accepts_missing_prefix(self, signer):
        signature = sign_text(signer, MESSAGE)
        assert decode_signature(signature[2:]) == decode_signature(signature)

    @pytest.mark.parametrize(
        "signature",
        ["0x", "0x1234", "0x" + "zz" * 65, "0x" + "00" * 64, "0x" + "00" * 66],
    )
    def test_rejects_bad_encoding(self, signature):
        with pytest.raises(MalformedSignature):
            decode_signature(signature)

    @pytest.mark.parametrize("v_byte", ["05", "1d", "9b", "ff"])
    def test_out_of_range_recovery_id_is_recovery_failure(self, signer, v_byte):
        signature = sign_text(signer, MESSAGE)
        tampered = signature[:-2] + v_byte
        with pytest.raises(RecoveryFailure) as exc_info:
            decode_signature(tampered)
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["v"] == int(v_byte, 16)


class TestRecoverAddress:
    def test_recovers_signer(self, signer):
        signature = sign_text(signer, MESSAGE)
        assert recover_address(MESSAGE, signature) == signer.address.lower()

    def test_recovery_is_deterministic(self, signer):
        signature = sign_text(signer, MESSAGE)
        assert recover_address(MESSAGE, signature) == recover_address(MESSAGE, signature)

    def test_zero_one_and_27_28_recover_same_address(self, signer):
        signature = sign_text(signer, MESSAGE)
        v_byte = int(signature[-2:], 16)
        low_v = signature[:-2] + f"{v_byte - 27:02x}"
        assert recover_address(MESSAGE, low_v) == recover_address(MESSAGE, signature)

    def test_different_message_recovers_different_address(self, signer):
        signature = sign_text(signer, MESSAGE)
        assert recover_address(MESSAGE + " ", signature) != signer.address.lower()

    @pytest.mark.parametrize(
        "index, mask", [(5, 0x01), (40, 0x01), (64, 0x80)], ids=["r", "s", "v"]
    )
    def test_flipped_bit_changes_or_fails(self, signer, index, mask):
        signature = sign_text(signer, MESSAGE)
        raw = bytearray(bytes.fromhex(signature[2:]))
        raw[index] ^= mask
        tampered = "0x" + raw.hex()
        try:
            recovered = recover_address(MESSAGE, tampered)
        except RecoveryFailure:
            return
        assert recovered != signer.address.lower()

    def test_zero_r_and_s_fail_recovery(self):
        signature = "0x" + "00" * 64 + "1b"
        with pytest.raises(SignatureMismatch):
            recover_address(MESSAGE, signature)
