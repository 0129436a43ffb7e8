"""Unit tests for the wallet login service.

Covers the challenge → sign → verify flow end to end against the memory
store, including replay, chain restrictions, disabled accounts, binding and
token refresh.
"""

from datetime import timedelta

import pytest

from conftest import sign_text
from walletgate.service.errors import (
    AccountDisabled,
    AddressAlreadyBound,
    AddressMismatch,
    ChainNotAllowed,
    FeatureDisabled,
    InvalidToken,
    MalformedAddress,
    MalformedSignature,
    NonceInvalid,
    RecoveryFailure,
    SecretNotConfigured,
    SignatureMismatch,
    TokenConfigError,
    UnboundAddress,
)
from walletgate.service.runtime import get_runtime
from walletgate.service.wallet_auth import strip_bearer
from walletgate.storage.models import UserRole, UserStatus


async def _login(runtime, account, chain_id=None):
    challenge = await runtime.wallet_auth.issue_challenge(account.address, chain_id)
    signature = sign_text(account, challenge.message)
    return await runtime.wallet_auth.verify(
        account.address, signature, challenge.nonce, chain_id
    )


class TestChallenge:
    async def test_issue_challenge_uses_system_name_prefix(self, wallet):
        runtime = get_runtime()
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        assert challenge.message.startswith("Login to walletgate-test\n")
        assert challenge.address == wallet.address.lower()

    async def test_disabled_feature(self, wallet, configure_runtime):
        runtime = configure_runtime(WALLET_LOGIN_ENABLED="false")
        with pytest.raises(FeatureDisabled):
            await runtime.wallet_auth.issue_challenge(wallet.address)

    @pytest.mark.parametrize("address", ["", "0x123", "not-an-address", None])
    async def test_malformed_address(self, address):
        with pytest.raises(MalformedAddress):
            await get_runtime().wallet_auth.issue_challenge(address)

    async def test_unbound_address_rejected_without_auto_register(
        self, wallet, configure_runtime
    ):
        runtime = configure_runtime(WALLET_AUTO_REGISTER_ENABLED="false")
        with pytest.raises(UnboundAddress):
            await runtime.wallet_auth.issue_challenge(wallet.address)
        assert len(runtime.nonces) == 0

    async def test_root_allowed_address_gets_challenge(self, wallet, configure_runtime):
        runtime = configure_runtime(
            WALLET_AUTO_REGISTER_ENABLED="false",
            WALLET_ROOT_ALLOWED_ADDRESSES=wallet.address,
        )
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        assert challenge.nonce


class TestVerify:
    async def test_first_login_auto_registers(self, wallet):
        runtime = get_runtime()
        result = await _login(runtime, wallet)

        assert result.user.wallet_address == wallet.address.lower()
        assert result.user.role == UserRole.USER.value
        assert result.session.user_id == result.user.id
        assert result.session.meta == {"login_method": "wallet"}
        claims = runtime.tokens.verify(result.token.token)
        assert claims.user_id == result.user.id
        assert claims.wallet_address == wallet.address.lower()

    async def test_second_login_reuses_account(self, wallet):
        runtime = get_runtime()
        first = await _login(runtime, wallet)
        second = await _login(runtime, wallet)
        assert first.user.id == second.user.id

    async def test_challenge_is_consumed_on_success(self, wallet):
        runtime = get_runtime()
        await _login(runtime, wallet)
        assert runtime.nonces.get_challenge(wallet.address) is None

    async def test_replayed_signature_rejected(self, wallet):
        runtime = get_runtime()
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(wallet, challenge.message)
        await runtime.wallet_auth.verify(wallet.address, signature, challenge.nonce)

        with pytest.raises(NonceInvalid):
            await runtime.wallet_auth.verify(wallet.address, signature, challenge.nonce)

    async def test_superseded_challenge_rejected(self, wallet):
        runtime = get_runtime()
        first = await runtime.wallet_auth.issue_challenge(wallet.address)
        await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(wallet, first.message)

        with pytest.raises(NonceInvalid):
            await runtime.wallet_auth.verify(wallet.address, signature, first.nonce)

    async def test_nonce_optional(self, wallet):
        runtime = get_runtime()
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(wallet, challenge.message)
        result = await runtime.wallet_auth.verify(wallet.address, signature)
        assert result.user.wallet_address == wallet.address.lower()

    async def test_expired_challenge_rejected(self, wallet):
        runtime = get_runtime()
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(wallet, challenge.message)
        later = challenge.expires_at + timedelta(seconds=1)
        runtime.nonces._clock = lambda: later

        with pytest.raises(NonceInvalid):
            await runtime.wallet_auth.verify(wallet.address, signature, challenge.nonce)

    async def test_signature_from_other_wallet(self, wallet, other_wallet):
        runtime = get_runtime()
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(other_wallet, challenge.message)

        with pytest.raises(SignatureMismatch):
            await runtime.wallet_auth.verify(wallet.address, signature, challenge.nonce)
        # Failed attempts leave the challenge usable
        assert runtime.nonces.get_challenge(wallet.address) is not None

    @pytest.mark.parametrize("signature", ["", "   ", "0xdeadbeef"])
    async def test_malformed_signature(self, wallet, signature):
        runtime = get_runtime()
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        with pytest.raises(MalformedSignature):
            await runtime.wallet_auth.verify(wallet.address, signature, challenge.nonce)

    async def test_out_of_range_recovery_id(self, wallet):
        runtime = get_runtime()
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(wallet, challenge.message)[:-2] + "05"

        with pytest.raises(RecoveryFailure) as exc_info:
            await runtime.wallet_auth.verify(wallet.address, signature, challenge.nonce)
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["reason"] == "recovery_failure"

    async def test_chain_not_allowed(self, wallet, configure_runtime):
        runtime = configure_runtime(WALLET_ALLOWED_CHAINS="1,137")
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address, "56")
        signature = sign_text(wallet, challenge.message)

        with pytest.raises(ChainNotAllowed):
            await runtime.wallet_auth.verify(wallet.address, signature, challenge.nonce, "56")
        assert runtime.nonces.get_challenge(wallet.address) is not None

    async def test_allowed_chain_accepted(self, wallet, configure_runtime):
        runtime = configure_runtime(WALLET_ALLOWED_CHAINS="1,137")
        result = await _login(runtime, wallet, chain_id="137")
        assert result.user.wallet_address == wallet.address.lower()

    async def test_disabled_account_cannot_log_in(self, wallet):
        runtime = get_runtime()
        first = await _login(runtime, wallet)
        runtime.store.update_user_status(first.user.id, UserStatus.DISABLED.value)

        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(wallet, challenge.message)
        with pytest.raises(AccountDisabled):
            await runtime.wallet_auth.verify(wallet.address, signature, challenge.nonce)
        assert runtime.nonces.get_challenge(wallet.address) is not None

    async def test_feature_disabled_between_challenge_and_verify(self, wallet):
        runtime = get_runtime()
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(wallet, challenge.message)
        runtime.settings.wallet_login_enabled = False

        with pytest.raises(FeatureDisabled):
            await runtime.wallet_auth.verify(wallet.address, signature, challenge.nonce)

    async def test_missing_secret_consumes_nothing(self, wallet, configure_runtime, monkeypatch):
        monkeypatch.delenv("WALLET_JWT_SECRET", raising=False)
        monkeypatch.delenv("SESSION_SECRET", raising=False)
        runtime = configure_runtime()
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(wallet, challenge.message)

        with pytest.raises(SecretNotConfigured):
            await runtime.wallet_auth.verify(wallet.address, signature, challenge.nonce)
        assert runtime.nonces.get_challenge(wallet.address) is not None

    async def test_missing_expiry_is_config_error(self, wallet, configure_runtime):
        runtime = configure_runtime(WALLET_JWT_EXPIRE_HOURS="")
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(wallet, challenge.message)

        with pytest.raises(TokenConfigError):
            await runtime.wallet_auth.verify(wallet.address, signature, challenge.nonce)

    async def test_session_secret_used_when_wallet_secret_unset(
        self, wallet, configure_runtime, monkeypatch
    ):
        monkeypatch.delenv("WALLET_JWT_SECRET", raising=False)
        runtime = configure_runtime(SESSION_SECRET="session-secret-fallback")
        result = await _login(runtime, wallet)
        assert runtime.tokens.verify(result.token.token).user_id == result.user.id


class TestBind:
    async def test_bind_new_wallet(self, wallet):
        runtime = get_runtime()
        user = runtime.store.create_user("alice")
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(wallet, challenge.message)

        bound = await runtime.wallet_auth.bind(
            user.id, wallet.address, signature, challenge.nonce
        )

        assert bound.wallet_address == wallet.address.lower()
        assert runtime.nonces.get_challenge(wallet.address) is None

    async def test_bind_conflict(self, wallet):
        runtime = get_runtime()
        owner = await _login(runtime, wallet)
        bob = runtime.store.create_user("bob")
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(wallet, challenge.message)

        with pytest.raises(AddressAlreadyBound):
            await runtime.wallet_auth.bind(bob.id, wallet.address, signature, challenge.nonce)
        assert runtime.store.get_user_by_wallet(wallet.address).id == owner.user.id

    async def test_bind_requires_valid_signature(self, wallet, other_wallet):
        runtime = get_runtime()
        user = runtime.store.create_user("alice")
        challenge = await runtime.wallet_auth.issue_challenge(wallet.address)
        signature = sign_text(other_wallet, challenge.message)

        with pytest.raises(SignatureMismatch):
            await runtime.wallet_auth.bind(user.id, wallet.address, signature, challenge.nonce)
        assert runtime.store.get_user(user.id).wallet_address is None


class TestRefresh:
    async def test_refresh_issues_new_token(self, wallet):
        runtime = get_runtime()
        login = await _login(runtime, wallet)

        result = await runtime.wallet_auth.refresh(f"Bearer {login.token.token}")

        assert result.user.id == login.user.id
        assert result.session.id != login.session.id
        assert result.session.meta == {"login_method": "wallet_refresh"}
        assert runtime.tokens.verify(result.token.token).user_id == login.user.id

    async def test_refresh_accepts_lowercase_scheme_and_bare_token(self, wallet):
        runtime = get_runtime()
        login = await _login(runtime, wallet)
        await runtime.wallet_auth.refresh(f"bearer {login.token.token}")
        await runtime.wallet_auth.refresh(login.token.token)

    async def test_refresh_works_when_feature_disabled(self, wallet):
        runtime = get_runtime()
        login = await _login(runtime, wallet)
        runtime.settings.wallet_login_enabled = False
        result = await runtime.wallet_auth.refresh(login.token.token)
        assert result.user.id == login.user.id

    @pytest.mark.parametrize("header", [None, "", "Bearer ", "Bearer not.a.token"])
    async def test_refresh_rejects_bad_tokens(self, header):
        with pytest.raises(InvalidToken):
            await get_runtime().wallet_auth.refresh(header)

    async def test_refresh_with_non_ascii_signature_is_invalid_token(self, wallet):
        runtime = get_runtime()
        login = await _login(runtime, wallet)
        header, payload, _sig = login.token.token.split(".")

        with pytest.raises(InvalidToken) as exc_info:
            await runtime.wallet_auth.refresh(f"Bearer {header}.{payload}.é")
        assert exc_info.value.detail["reason"] == "invalid_token"

    async def test_refresh_after_rebind_is_address_mismatch(self, wallet, other_wallet):
        runtime = get_runtime()
        login = await _login(runtime, wallet)
        runtime.store.set_wallet_address(login.user.id, other_wallet.address)

        with pytest.raises(AddressMismatch):
            await runtime.wallet_auth.refresh(login.token.token)

    async def test_refresh_disabled_account(self, wallet):
        runtime = get_runtime()
        login = await _login(runtime, wallet)
        runtime.store.update_user_status(login.user.id, UserStatus.DISABLED.value)

        with pytest.raises(AccountDisabled):
            await runtime.wallet_auth.refresh(login.token.token)


class TestStripBearer:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Bearer abc", "abc"),
            ("BEARER abc", "abc"),
            ("  bearer   abc  ", "abc"),
            ("abc", "abc"),
            (None, ""),
            ("Bearer", "Bearer"),
        ],
    )
    def test_strip(self, raw, expected):
        assert strip_bearer(raw) == expected
