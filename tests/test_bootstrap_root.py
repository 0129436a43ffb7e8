import importlib.util
from pathlib import Path

import pytest

from walletgate.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_root.py"
ADDRESS = "0x52908400098527886E0F7030069857D2E4169EE7"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_root", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.parametrize(
    "password,ok",
    [("Sup3r-Secret-Pass", True), ("short1!", False), ("alllowercaseletters", False)],
)
def test_validate_password(bootstrap, password, ok):
    assert bootstrap.validate_password(password) is ok


def test_bootstrap_creates_root_with_wallet(bootstrap):
    result = bootstrap.bootstrap_root("root", "Sup3r-Secret-Pass", ADDRESS)

    assert result["status"] == "created"
    assert result["wallet_address"] == ADDRESS.lower()
    root = get_runtime().store.get_root_user()
    assert root.id == result["user_id"]


def test_bootstrap_is_idempotent(bootstrap):
    bootstrap.bootstrap_root("root", "Sup3r-Secret-Pass", None)
    assert bootstrap.bootstrap_root("root", "Sup3r-Secret-Pass", None)["status"] == "already_root"


def test_bootstrap_dry_run_changes_nothing(bootstrap):
    result = bootstrap.bootstrap_root("root", "Sup3r-Secret-Pass", None, dry_run=True)
    assert result["status"] == "dry_run"
    assert get_runtime().store.get_root_user() is None


def test_bootstrap_rejects_bad_wallet(bootstrap):
    with pytest.raises(ValueError):
        bootstrap.bootstrap_root("root", "Sup3r-Secret-Pass", "0x1234")
