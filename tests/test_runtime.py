import importlib.util
from pathlib import Path

from commerce_auth.service import runtime as runtime_module
from commerce_auth.service.runtime import (
    _mask_url_password,
    get_runtime,
    reset_runtime_for_tests,
)
from commerce_auth.storage.memory import MemoryStore

ROOT = Path(__file__).resolve().parent.parent


def _load_script():
    spec = importlib.util.spec_from_file_location(
        "create_account", ROOT / "scripts" / "create_account.py"
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_runtime_uses_memory_store(monkeypatch, tmp_path):
    monkeypatch.setenv("STATE_ROOT", str(tmp_path))
    runtime = reset_runtime_for_tests()

    assert isinstance(runtime.store, MemoryStore)
    assert get_runtime() is runtime
    result = runtime.auth.register("runtime_user", "runtime@example.com", "Password123")
    assert result.success
    assert (tmp_path / "state" / "account_store.json").exists()


def test_reset_builds_new_runtime(monkeypatch, tmp_path):
    monkeypatch.setenv("STATE_ROOT", str(tmp_path))
    first = reset_runtime_for_tests()
    second = reset_runtime_for_tests()
    assert first is not second
    assert runtime_module.runtime is second


def test_mask_url_password():
    assert (
        _mask_url_password("postgresql://app:secret@db:5432/shop")
        == "postgresql://app:***@db:5432/shop"
    )
    assert _mask_url_password("postgresql://db/shop") == "postgresql://db/shop"
    assert _mask_url_password(None) is None


def test_create_account_script(monkeypatch, tmp_path):
    monkeypatch.setenv("STATE_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    script = _load_script()

    created = script.create_account("script_user", "script@example.com", "Password123")
    assert created["status"] == "created"
    assert created["account_id"] is not None

    duplicate = script.create_account("script_user", "other@example.com", "Password123")
    assert duplicate == {"status": "rejected", "message": "Username already exists"}

    invalid = script.create_account("x", "not-an-email", "short")
    assert invalid["status"] == "invalid"

    dry_run = script.create_account("dry_user", "dry@example.com", "Password123", dry_run=True)
    assert dry_run["status"] == "dry_run"
