from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from commerce_auth.logging import get_logger
from commerce_auth.storage.errors import ConstraintViolation
from commerce_auth.storage.models import Account, utcnow


class MemoryStore:
    """In-process account store.

    Every read-decide-write sequence runs under one re-entrant lock, which
    makes uniqueness checks and refresh-token swaps atomic across threads.
    With ``fs_root`` set the rows are snapshotted to JSON after each write and
    reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[int, Account] = {}
        self._account_id_seq: int = 1
        # Thread lock for sequence counters to prevent race conditions
        self._seq_lock = threading.Lock()
        # RLock so helpers can re-acquire inside an outer operation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _next_account_id(self) -> int:
        with self._seq_lock:
            value = self._account_id_seq
            self._account_id_seq += 1
            return value

    def _active(self) -> Iterable[Account]:
        return (a for a in self.accounts.values() if a.is_active)

    def _get_active(self, account_id: int) -> Optional[Account]:
        account = self.accounts.get(account_id)
        if account is None or not account.is_active:
            return None
        return account

    # lookups

    def find_active_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            found = next((a for a in self._active() if a.username == username), None)
            return found.copy() if found else None

    def find_active_by_id(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            found = self._get_active(account_id)
            return found.copy() if found else None

    def find_active_by_refresh_token(self, token: str) -> Optional[Account]:
        with self._data_lock:
            found = next(
                (a for a in self._active() if a.refresh_token is not None and a.refresh_token == token),
                None,
            )
            return found.copy() if found else None

    def username_taken(self, username: str, excluding_id: Optional[int] = None) -> bool:
        with self._data_lock:
            return any(
                a.username == username and a.id != excluding_id for a in self._active()
            )

    def email_taken(self, email: str, excluding_id: Optional[int] = None) -> bool:
        with self._data_lock:
            return any(a.email == email and a.id != excluding_id for a in self._active())

    # writes

    def _commit(self, account_id: int, previous: Optional[Account]) -> None:
        """Write the snapshot, restoring the row if the write fails."""
        try:
            self._persist_state()
        except RuntimeError:
            if previous is None:
                self.accounts.pop(account_id, None)
            else:
                self.accounts[account_id] = previous
            raise

    def insert(self, account: Account) -> Account:
        with self._data_lock:
            if account.is_active:
                if self.username_taken(account.username):
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if self.email_taken(account.email):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            stored = account.copy()
            stored.id = self._next_account_id()
            self.accounts[stored.id] = stored
            self._commit(stored.id, None)
            return stored.copy()

    def persist_refresh_token(self, account_id: int, token: str, expiry: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return
            previous = account.copy()
            account.refresh_token = token
            account.refresh_token_expiry = expiry
            account.updated_at = utcnow()
            self._commit(account_id, previous)

    def replace_refresh_token(
        self, account_id: int, expected: str, token: str, expiry: datetime
    ) -> bool:
        with self._data_lock:
            account = self._get_active(account_id)
            if account is None or account.refresh_token != expected:
                return False
            previous = account.copy()
            account.refresh_token = token
            account.refresh_token_expiry = expiry
            account.updated_at = utcnow()
            self._commit(account_id, previous)
            return True

    def clear_refresh_token(self, account_id: int, expected: Optional[str] = None) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None or account.refresh_token is None:
                return False
            if expected is not None and account.refresh_token != expected:
                return False
            previous = account.copy()
            account.refresh_token = None
            account.refresh_token_expiry = None
            account.updated_at = utcnow()
            self._commit(account_id, previous)
            return True

    def touch_last_login(self, account_id: int) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return
            previous = account.copy()
            now = utcnow()
            account.last_login_time = now
            account.updated_at = now
            self._commit(account_id, previous)

    def update_password_digest(self, account_id: int, digest: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return
            previous = account.copy()
            account.password_digest = digest
            account.updated_at = utcnow()
            self._commit(account_id, previous)

    def deactivate(self, account_id: int) -> bool:
        """Soft delete: the row stays but no lookup returns it."""
        with self._data_lock:
            account = self._get_active(account_id)
            if account is None:
                return False
            previous = account.copy()
            account.is_active = False
            account.refresh_token = None
            account.refresh_token_expiry = None
            account.updated_at = utcnow()
            self._commit(account_id, previous)
            return True

    # snapshot

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "account_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_account(self, account: Account) -> Dict[str, Any]:
        return {
            "id": account.id,
            "username": account.username,
            "email": account.email,
            "password_digest": account.password_digest,
            "refresh_token": account.refresh_token,
            "refresh_token_expiry": self._serialize_datetime(account.refresh_token_expiry),
            "last_login_time": self._serialize_datetime(account.last_login_time),
            "is_active": account.is_active,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: Dict[str, Any]) -> Account:
        return Account(
            id=int(data["id"]),
            username=data["username"],
            email=data["email"],
            password_digest=data["password_digest"],
            refresh_token=data.get("refresh_token"),
            refresh_token_expiry=self._deserialize_datetime(data.get("refresh_token_expiry")),
            last_login_time=self._deserialize_datetime(data.get("last_login_time")),
            is_active=bool(data.get("is_active", True)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist account state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            account.id: account
            for account in (self._deserialize_account(a) for a in data.get("accounts", []))
        }
        self._account_id_seq = max(self.accounts, default=0) + 1
        self.logger.info("account_state_loaded", accounts=len(self.accounts))
        return True
