from datetime import timedelta
import threading

import pytest

from realtyauth.storage.errors import ConstraintViolation, StoreUnavailable
from realtyauth.storage.memory import MemoryStore
from realtyauth.storage.models import utcnow


@pytest.fixture
def store():
    return MemoryStore()


def _create(store, email="ann@example.com", **kwargs):
    return store.create_user(email, "hash", "Ann", "Lane", **kwargs)


def test_create_user_defaults(store):
    user = _create(store, email="Ann@Example.COM")

    assert user.id
    assert user.email == "ann@example.com"
    assert user.role == "User"
    assert user.permissions == []
    assert user.is_active is True
    assert user.is_email_verified is False
    assert user.failed_login_attempts == 0
    assert user.refresh_token is None


def test_duplicate_email_is_case_insensitive(store):
    _create(store)

    with pytest.raises(ConstraintViolation) as excinfo:
        _create(store, email="ANN@example.com")
    assert excinfo.value.detail == {"field": "email"}


def test_lookups_skip_inactive_accounts(store):
    user = _create(store)
    store.update_refresh_token(user.id, "tok", utcnow() + timedelta(hours=1))
    store.set_user_active(user.id, False)

    assert store.get_user(user.id) is None
    assert store.get_user_by_email("ann@example.com") is None
    assert store.get_user_by_refresh_token("tok") is None
    assert store.get_user_by_refresh_token("tok", active_only=False).id == user.id


def test_blank_keys_return_none(store):
    _create(store)

    assert store.get_user("") is None
    assert store.get_user_by_email("  ") is None
    assert store.get_user_by_refresh_token("") is None


def test_unknown_ids(store):
    assert store.update_last_login("missing") is False
    assert store.increment_failed_login_attempts("missing") is None
    assert store.lock_user_account("missing", utcnow()) is False
    assert store.update_user_role("missing", "Admin") is None


def test_refresh_token_overwrites_previous(store):
    user = _create(store)
    store.update_refresh_token(user.id, "first", utcnow())
    store.update_refresh_token(user.id, "second", utcnow())

    assert store.get_user_by_refresh_token("first") is None
    assert store.get_user_by_refresh_token("second").id == user.id


def test_failed_attempts_and_lockout(store):
    user = _create(store)
    assert store.increment_failed_login_attempts(user.id) == 1
    assert store.increment_failed_login_attempts(user.id) == 2

    lockout_end = utcnow() + timedelta(minutes=5)
    store.lock_user_account(user.id, lockout_end)
    locked = store.get_user(user.id)
    assert locked.lockout_end == lockout_end
    assert locked.failed_login_attempts == 0
    assert locked.is_locked_out(utcnow()) is True

    store.increment_failed_login_attempts(user.id)
    store.reset_failed_login_attempts(user.id)
    reset = store.get_user(user.id)
    assert reset.failed_login_attempts == 0
    assert reset.lockout_end is None


def test_mutations_bump_updated_at(store):
    user = _create(store)
    before = store.get_user(user.id).updated_at

    store.update_last_login(user.id)

    after = store.get_user(user.id)
    assert after.updated_at >= before
    assert after.last_login is not None


def test_returned_accounts_are_detached(store):
    user = _create(store)
    user.role = "Admin"
    user.permissions.append("delete")

    stored = store.get_user(user.id)
    assert stored.role == "User"
    assert stored.permissions == []


def test_concurrent_failed_attempts_are_counted(store):
    user = _create(store)

    threads = [
        threading.Thread(target=store.increment_failed_login_attempts, args=(user.id,))
        for _ in range(20)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get_user(user.id).failed_login_attempts == 20


def test_state_persists_across_instances(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(
        "persist@example.com",
        "hash",
        "Per",
        "Sist",
        role="Manager",
        permissions=["listings:write"],
        metadata={"source": "import"},
    )
    expiry = utcnow() + timedelta(days=1)
    store.update_refresh_token(user.id, "persisted-token", expiry)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.role == "Manager"
    assert reloaded_user.permissions == ["listings:write"]
    assert reloaded_user.metadata == {"source": "import"}
    assert reloaded_user.refresh_token_expiry == expiry
    assert reloaded.get_user_by_refresh_token("persisted-token").id == user.id
    assert (tmp_path / "state" / "memory_store.json").exists()


def test_no_snapshot_without_fs_root(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    _create(MemoryStore())

    assert not any(tmp_path.iterdir())


def _block_snapshot(tmp_path):
    snapshot = tmp_path / "state" / "memory_store.json"
    if snapshot.exists():
        snapshot.unlink()
    snapshot.mkdir(parents=True)


def test_create_fails_cleanly_when_snapshot_unwritable(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    _block_snapshot(tmp_path)

    with pytest.raises(StoreUnavailable):
        _create(store, email="a@x.com")

    assert store.get_user_by_email("a@x.com") is None
    assert store.users == {}


def test_update_rolls_back_when_snapshot_unwritable(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _create(store)
    _block_snapshot(tmp_path)

    with pytest.raises(StoreUnavailable):
        store.update_refresh_token(user.id, "tok", utcnow() + timedelta(hours=1))
    with pytest.raises(StoreUnavailable):
        store.increment_failed_login_attempts(user.id)

    current = store.get_user(user.id)
    assert current.refresh_token is None
    assert current.failed_login_attempts == 0
    assert current.updated_at == user.updated_at
