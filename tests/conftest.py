import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="walletgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from eth_account import Account  # noqa: E402
from eth_account.messages import encode_defunct  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from walletgate.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_JWT_SECRET = "test-wallet-secret-for-automation-only-0123456789"

WALLET_TEST_ENV = {
    "WALLET_LOGIN_ENABLED": "true",
    "WALLET_AUTO_REGISTER_ENABLED": "true",
    "WALLET_JWT_SECRET": TEST_JWT_SECRET,
    "WALLET_JWT_EXPIRE_HOURS": "24",
    "WALLET_JWT_FALLBACK_SECRETS": "",
    "WALLET_ALLOWED_CHAINS": "",
    "WALLET_ROOT_ALLOWED_ADDRESSES": "",
    "WALLET_NONCE_TTL_MINUTES": "10",
    "SYSTEM_NAME": "walletgate-test",
}


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state dir per test so the memory store snapshot never leaks between tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    for key, value in WALLET_TEST_ENV.items():
        monkeypatch.setenv(key, value)
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def configure_runtime(monkeypatch):
    """Override env settings and rebuild the runtime."""

    def _configure(**env):
        for key, value in env.items():
            monkeypatch.setenv(key, str(value))
        return reset_runtime_for_tests()

    return _configure


@pytest.fixture
def wallet():
    return Account.create()


@pytest.fixture
def other_wallet():
    return Account.create()


def sign_text(account, message: str) -> str:
    """personal_sign ``message`` and return a 0x-prefixed hex signature (v = 27/28)."""
    signed = Account.sign_message(encode_defunct(text=message), private_key=account.key)
    return "0x" + bytes(signed.signature).hex()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
