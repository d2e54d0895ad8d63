from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from commerce_auth.config import MIN_JWT_SECRET_LENGTH, Settings
from commerce_auth.logging import get_logger
from commerce_auth.service.errors import (
    ConfigurationError,
    InvalidTokenError,
    TokenExpiredError,
)
from commerce_auth.storage.models import Account

logger = get_logger(__name__)

JWT_ALGORITHM = "HS256"
# Bytes of entropy in an opaque refresh token
REFRESH_TOKEN_BYTES = 64


class TokenIssuer:
    """Signed access tokens and opaque refresh tokens.

    Access tokens are compact HS256 JWTs carrying ``iss``/``aud`` so tokens
    minted for another service are rejected. Signature checks and expiry
    checks are separate steps: ``decode_expired_ok`` trusts an authentic token
    whatever its age, ``decode`` additionally enforces ``exp``.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=30),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        if not secret or len(secret) < MIN_JWT_SECRET_LENGTH:
            raise ConfigurationError(
                f"signing secret must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        if refresh_ttl <= access_ttl:
            raise ConfigurationError("refresh token TTL must exceed access token TTL")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=settings.access_token_ttl,
            refresh_ttl=settings.refresh_token_ttl,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # issuing

    def issue_access_token(self, account: Account) -> str:
        now = self._now()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": str(account.id),
            "username": account.username,
            "email": account.email,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self.access_ttl).timestamp()),
        }
        return self._encode_jwt(payload)

    def issue_refresh_token(self) -> str:
        return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)

    def refresh_token_expiry(self) -> datetime:
        return self._now() + self.refresh_ttl

    # validation

    def decode_expired_ok(self, token: str) -> dict[str, Any]:
        """Verify signature, issuer and audience but not the time window.

        Raises:
            InvalidTokenError: structure, algorithm, signature, issuer or
                audience is wrong.
        """
        if not isinstance(token, str) or not token.isascii():
            raise InvalidTokenError("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed token")

        header = self._read_segment(header_b64)
        if not isinstance(header, dict) or header.get("alg") != JWT_ALGORITHM:
            # Reject alg=none and algorithm confusion attempts
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("token signature mismatch")

        payload = self._read_segment(payload_b64)
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token payload")
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("unexpected token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError("unexpected token audience")
        if self._expiry_of(payload) is None:
            raise InvalidTokenError("token has no expiry")
        return payload

    def decode(self, token: str) -> dict[str, Any]:
        """Full validation: ``decode_expired_ok`` plus ``exp > now``."""
        payload = self.decode_expired_ok(token)
        exp = self._expiry_of(payload)
        if exp <= self._now().timestamp():
            raise TokenExpiredError("token has expired")
        return payload

    def is_expired(self, token: str) -> bool:
        """Time check on the ``exp`` claim alone; the signature is not consulted.

        Tokens whose payload cannot be read count as expired.
        """
        try:
            _, payload_b64, _ = token.split(".")
        except (AttributeError, ValueError):
            return True
        try:
            payload = self._read_segment(payload_b64)
        except InvalidTokenError:
            return True
        exp = self._expiry_of(payload) if isinstance(payload, dict) else None
        if exp is None:
            return True
        return exp <= self._now().timestamp()

    # encoding helpers

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _read_segment(self, segment: str) -> Any:
        try:
            return json.loads(self._decode_segment(segment))
        except (ValueError, TypeError) as exc:
            # binascii.Error and JSONDecodeError are both ValueErrors
            raise InvalidTokenError("malformed token segment") from exc

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode("utf-8"), hashlib.sha256)
        return self._encode_segment(digest.digest())

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": JWT_ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    @staticmethod
    def _expiry_of(payload: dict[str, Any]) -> Optional[float]:
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        try:
            value = float(exp)
        except OverflowError:
            # JSON integers can exceed the float range
            return None
        if not math.isfinite(value):
            return None
        return value
