import pytest

from walletgate.storage.errors import ConstraintViolation
from walletgate.storage.memory import MemoryStore

ADDRESS = "0x52908400098527886E0F7030069857D2E4169EE7"


def test_memory_store_persists_wallet_role_and_sessions(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("root", role="root", wallet_address=ADDRESS)
    store.save_password(user.id, "$argon2id$digest", "argon2id")
    session = store.create_session(user.id, meta={"login_method": "wallet"})

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user_by_wallet(ADDRESS)
    assert reloaded_user
    assert reloaded_user.id == user.id
    assert reloaded_user.role == "root"
    assert reloaded_user.wallet_address == ADDRESS.lower()
    assert reloaded.get_password_record(user.id) == ("$argon2id$digest", "argon2id")

    reloaded_session = reloaded.get_session(session.id)
    assert reloaded_session
    assert reloaded_session.meta == {"login_method": "wallet"}
    assert reloaded_session.expires_at == session.expires_at


def test_wallet_address_is_unique_case_insensitively(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("alice", wallet_address=ADDRESS)

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("bob", wallet_address=ADDRESS.lower())
    assert exc_info.value.detail == {"field": "wallet_address"}

    bob = store.create_user("bob")
    with pytest.raises(ConstraintViolation):
        store.set_wallet_address(bob.id, ADDRESS)


def test_duplicate_username_rejected(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.create_user("alice")
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("alice")
    assert exc_info.value.field == "username"


def test_root_user_skips_deleted(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    first = store.create_user("old-root", role="root")
    second = store.create_user("new-root", role="root")
    assert store.get_root_user().id == first.id

    store.update_user_status(first.id, "deleted")
    assert store.get_root_user().id == second.id


def test_clear_wallet_address_and_revoke_sessions(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice", wallet_address=ADDRESS)
    first = store.create_session(user.id)
    second = store.create_session(user.id)

    store.clear_wallet_address(user.id)
    store.revoke_user_sessions(user.id)

    assert store.get_user_by_wallet(ADDRESS) is None
    assert store.get_session(first.id) is None
    assert store.get_session(second.id) is None


def test_session_requires_existing_user(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    with pytest.raises(ConstraintViolation):
        store.create_session("missing")
