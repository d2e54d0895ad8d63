import json
from datetime import timedelta
from pathlib import Path

import pytest

from commerce_auth.storage.errors import ConstraintViolation
from commerce_auth.storage.memory import MemoryStore
from commerce_auth.storage.models import Account, utcnow


def _insert(store, username="shopper", email="shopper@example.com"):
    return store.insert(Account.new(username, email, "digest"))


def test_insert_assigns_sequential_ids():
    store = MemoryStore()
    first = _insert(store)
    second = _insert(store, "second", "second@example.com")

    assert first.id == 1
    assert second.id == 2


def test_insert_rejects_duplicates_with_field():
    store = MemoryStore()
    _insert(store)

    with pytest.raises(ConstraintViolation) as username_exc:
        _insert(store, email="other@example.com")
    assert username_exc.value.field == "username"

    with pytest.raises(ConstraintViolation) as email_exc:
        _insert(store, username="other")
    assert email_exc.value.field == "email"


def test_returned_accounts_are_copies():
    store = MemoryStore()
    account = _insert(store)
    account.username = "mutated"

    assert store.find_active_by_id(account.id).username == "shopper"


def test_taken_checks_ignore_inactive_and_excluded():
    store = MemoryStore()
    account = _insert(store)

    assert store.username_taken("shopper")
    assert store.email_taken("shopper@example.com")
    assert not store.username_taken("shopper", excluding_id=account.id)

    store.deactivate(account.id)
    assert not store.username_taken("shopper")
    assert store.find_active_by_username("shopper") is None
    assert store.find_active_by_id(account.id) is None


def test_replace_refresh_token_is_compare_and_swap():
    store = MemoryStore()
    account = _insert(store)
    expiry = utcnow() + timedelta(days=7)
    store.persist_refresh_token(account.id, "token-a", expiry)

    assert store.replace_refresh_token(account.id, "token-a", "token-b", expiry)
    assert not store.replace_refresh_token(account.id, "token-a", "token-c", expiry)
    assert store.find_active_by_refresh_token("token-b").id == account.id
    assert store.find_active_by_refresh_token("token-a") is None


def test_clear_refresh_token():
    store = MemoryStore()
    account = _insert(store)
    store.persist_refresh_token(account.id, "token-a", utcnow() + timedelta(days=1))

    assert not store.clear_refresh_token(account.id, expected="token-z")
    assert store.clear_refresh_token(account.id, expected="token-a")
    assert not store.clear_refresh_token(account.id)

    stored = store.find_active_by_id(account.id)
    assert stored.refresh_token is None
    assert stored.refresh_token_expiry is None


def test_deactivate_drops_refresh_token():
    store = MemoryStore()
    account = _insert(store)
    store.persist_refresh_token(account.id, "token-a", utcnow() + timedelta(days=1))

    assert store.deactivate(account.id)
    assert not store.deactivate(account.id)
    assert store.find_active_by_refresh_token("token-a") is None


def test_touch_last_login_and_password_update():
    store = MemoryStore()
    account = _insert(store)

    store.touch_last_login(account.id)
    store.update_password_digest(account.id, "new-digest")

    stored = store.find_active_by_id(account.id)
    assert stored.last_login_time is not None
    assert stored.password_digest == "new-digest"
    assert stored.updated_at >= account.updated_at


def test_memory_store_persists_accounts(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    account = _insert(store)
    expiry = utcnow() + timedelta(days=7)
    store.persist_refresh_token(account.id, "token-a", expiry)
    store.touch_last_login(account.id)

    state_file = Path(tmp_path) / "state" / "account_store.json"
    assert "token-a" in json.loads(state_file.read_text())["accounts"][0]["refresh_token"]

    reloaded = MemoryStore(fs_root=str(tmp_path))
    stored = reloaded.find_active_by_refresh_token("token-a")
    assert stored.id == account.id
    assert stored.refresh_token_expiry == expiry
    assert stored.last_login_time is not None

    # Sequence resumes after the highest persisted id
    assert _insert(reloaded, "second", "second@example.com").id == account.id + 1


def test_failed_snapshot_leaves_rows_unchanged(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    account = _insert(store)
    expiry = utcnow() + timedelta(days=7)
    store.persist_refresh_token(account.id, "token-a", expiry)

    # A directory where the temp snapshot file goes makes every write fail
    (Path(tmp_path) / "state" / "account_store.tmp").mkdir()

    with pytest.raises(RuntimeError):
        store.touch_last_login(account.id)
    with pytest.raises(RuntimeError):
        store.replace_refresh_token(account.id, "token-a", "token-b", expiry)
    with pytest.raises(RuntimeError):
        store.deactivate(account.id)
    with pytest.raises(RuntimeError):
        _insert(store, "second", "second@example.com")

    stored = store.find_active_by_id(account.id)
    assert stored.last_login_time is None
    assert stored.refresh_token == "token-a"
    assert store.find_active_by_username("second") is None
    assert not store.username_taken("second")
