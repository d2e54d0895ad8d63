from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Optional, Protocol

from commerce_auth.api.schemas import AccountSummary, AuthOutcome, AuthResult
from commerce_auth.config import Settings
from commerce_auth.logging import get_logger
from commerce_auth.service.errors import InvalidTokenError
from commerce_auth.service.passwords import CredentialHasher
from commerce_auth.service.tokens import TokenIssuer
from commerce_auth.storage.errors import ConstraintViolation
from commerce_auth.storage.models import Account

logger = get_logger(__name__)


class AccountStore(Protocol):
    """Durable account rows.

    Implementations must make ``insert`` enforce username/email uniqueness
    among active accounts and make ``replace_refresh_token`` /
    ``clear_refresh_token`` compare-and-swap operations, so concurrent callers
    presenting the same refresh token cannot both win.
    """

    def find_active_by_username(self, username: str) -> Optional[Account]: ...

    def find_active_by_id(self, account_id: int) -> Optional[Account]: ...

    def username_taken(
        self, username: str, excluding_id: Optional[int] = None
    ) -> bool: ...

    def email_taken(self, email: str, excluding_id: Optional[int] = None) -> bool: ...

    def insert(self, account: Account) -> Account: ...

    def find_active_by_refresh_token(self, token: str) -> Optional[Account]: ...

    def persist_refresh_token(
        self, account_id: int, token: str, expiry: datetime
    ) -> None: ...

    def replace_refresh_token(
        self, account_id: int, expected: str, token: str, expiry: datetime
    ) -> bool: ...

    def clear_refresh_token(
        self, account_id: int, expected: Optional[str] = None
    ) -> bool: ...

    def touch_last_login(self, account_id: int) -> None: ...

    def update_password_digest(self, account_id: int, digest: str) -> None: ...

    def deactivate(self, account_id: int) -> bool: ...


class AuthService:
    """Register, login, refresh-token rotation and revocation.

    Holds no per-request state; every durable fact lives in the store. Expected
    failures come back as ``AuthResult.fail(...)``. Store errors and
    misconfiguration propagate.
    """

    def __init__(
        self,
        store: AccountStore,
        hasher: CredentialHasher,
        issuer: TokenIssuer,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.issuer = issuer
        self.logger = logger
        # Verified against when the username is unknown so both failure
        # paths pay for one argon2 verification
        self._dummy_digest = hasher.hash(secrets.token_urlsafe(16))

    @classmethod
    def from_settings(cls, store: AccountStore, settings: Settings) -> "AuthService":
        return cls(
            store,
            CredentialHasher.from_settings(settings),
            TokenIssuer.from_settings(settings),
        )

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def register(self, username: str, email: str, password: str) -> AuthResult:
        if self.store.username_taken(username):
            self.logger.info("register_rejected", reason="duplicate_username")
            return AuthResult.fail(AuthOutcome.DUPLICATE_USERNAME)
        if self.store.email_taken(email):
            self.logger.info("register_rejected", reason="duplicate_email")
            return AuthResult.fail(AuthOutcome.DUPLICATE_EMAIL)

        digest = self.hasher.hash(password)
        try:
            account = self.store.insert(Account.new(username, email, digest))
        except ConstraintViolation as exc:
            # A concurrent registration claimed the name between check and insert
            outcome = (
                AuthOutcome.DUPLICATE_EMAIL
                if exc.field == "email"
                else AuthOutcome.DUPLICATE_USERNAME
            )
            self.logger.info("register_rejected", reason=outcome.value, race=True)
            return AuthResult.fail(outcome)

        access_token, refresh_token, expiry = self._issue_pair(account)
        self.store.persist_refresh_token(account.id, refresh_token, expiry)
        account.refresh_token = refresh_token
        account.refresh_token_expiry = expiry
        self.logger.info("account_registered", account_id=account.id)
        return AuthResult.ok(
            "Registration successful",
            access_token=access_token,
            refresh_token=refresh_token,
            token_expiry=expiry,
            account=AccountSummary.from_account(account),
        )

    def login(self, username: str, password: str) -> AuthResult:
        account = self.store.find_active_by_username(username)
        if account is None:
            self.hasher.verify(password, self._dummy_digest)
            self.logger.info("login_failed")
            return AuthResult.fail(AuthOutcome.INVALID_CREDENTIALS)
        if not self.hasher.verify(password, account.password_digest):
            self.logger.info("login_failed", account_id=account.id)
            return AuthResult.fail(AuthOutcome.INVALID_CREDENTIALS)

        if self.hasher.needs_rehash(account.password_digest):
            self.store.update_password_digest(account.id, self.hasher.hash(password))
            self.logger.info("password_digest_upgraded", account_id=account.id)

        self.store.touch_last_login(account.id)
        access_token, refresh_token, expiry = self._issue_pair(account)
        # Overwrites any earlier refresh token, signing out other devices
        self.store.persist_refresh_token(account.id, refresh_token, expiry)
        refreshed = self.store.find_active_by_id(account.id) or account
        self.logger.info("login_succeeded", account_id=account.id)
        return AuthResult.ok(
            "Login successful",
            access_token=access_token,
            refresh_token=refresh_token,
            token_expiry=expiry,
            account=AccountSummary.from_account(refreshed),
        )

    def refresh(self, refresh_token: str) -> AuthResult:
        account = self._find_by_refresh_token(refresh_token)
        if account is None:
            return AuthResult.fail(AuthOutcome.INVALID_OR_EXPIRED_TOKEN)
        if not account.has_live_refresh_token(self._now()):
            self.logger.info("refresh_token_expired", account_id=account.id)
            return AuthResult.fail(AuthOutcome.INVALID_OR_EXPIRED_TOKEN)

        access_token, new_refresh_token, expiry = self._issue_pair(account)
        if not self.store.replace_refresh_token(
            account.id, refresh_token, new_refresh_token, expiry
        ):
            self.logger.warning("refresh_token_race_lost", account_id=account.id)
            return AuthResult.fail(AuthOutcome.INVALID_OR_EXPIRED_TOKEN)
        self.logger.info("refresh_token_rotated", account_id=account.id)
        return AuthResult.ok(
            "Token refreshed successfully",
            access_token=access_token,
            refresh_token=new_refresh_token,
            token_expiry=expiry,
            account=AccountSummary.from_account(account),
        )

    def revoke(self, refresh_token: str) -> AuthResult:
        account = self._find_by_refresh_token(refresh_token)
        if account is None or not self.store.clear_refresh_token(
            account.id, expected=refresh_token
        ):
            return AuthResult.fail(AuthOutcome.INVALID_OR_EXPIRED_TOKEN)
        self.logger.info("refresh_token_revoked", account_id=account.id)
        return AuthResult.ok("Token revoked successfully")

    def logout(self, refresh_token: str) -> AuthResult:
        return self.revoke(refresh_token)

    def change_password(
        self, account_id: int, current_password: str, new_password: str
    ) -> AuthResult:
        account = self.store.find_active_by_id(account_id)
        if account is None:
            return AuthResult.fail(AuthOutcome.ACCOUNT_NOT_FOUND)
        if not self.hasher.verify(current_password, account.password_digest):
            self.logger.info("password_change_rejected", account_id=account_id)
            return AuthResult.fail(AuthOutcome.INVALID_CREDENTIALS)
        self.store.update_password_digest(account_id, self.hasher.hash(new_password))
        self.logger.info("password_changed", account_id=account_id)
        return AuthResult.ok("Password changed successfully")

    def authenticate(self, access_token: str) -> Optional[AccountSummary]:
        """Resolve a live access token to its active account, or None."""
        try:
            claims = self.issuer.decode(access_token)
        except InvalidTokenError as exc:
            self.logger.info("access_token_rejected", reason=exc.error_code)
            return None
        account_id = self._account_id_from_claims(claims)
        if account_id is None:
            return None
        account = self.store.find_active_by_id(account_id)
        return AccountSummary.from_account(account) if account else None

    def identify_expired(self, access_token: str) -> Optional[int]:
        """Account id from an authentic access token, expired or not."""
        try:
            claims = self.issuer.decode_expired_ok(access_token)
        except InvalidTokenError:
            self.logger.warning("access_token_invalid")
            return None
        return self._account_id_from_claims(claims)

    def _find_by_refresh_token(self, refresh_token: str) -> Optional[Account]:
        if not isinstance(refresh_token, str) or not refresh_token:
            return None
        return self.store.find_active_by_refresh_token(refresh_token)

    def _issue_pair(self, account: Account) -> tuple[str, str, datetime]:
        return (
            self.issuer.issue_access_token(account),
            self.issuer.issue_refresh_token(),
            self.issuer.refresh_token_expiry(),
        )

    @staticmethod
    def _account_id_from_claims(claims: dict) -> Optional[int]:
        if claims.get("token_type") != "access":
            return None
        try:
            return int(claims.get("sub"))
        except (TypeError, ValueError):
            return None
