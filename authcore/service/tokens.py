from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock
from authcore.storage.models import Account

logger = get_logger(__name__)

_ALGORITHM = "HS256"
# 64 random bytes -> 512 bits of entropy per refresh token
_REFRESH_TOKEN_BYTES = 64


@dataclass(frozen=True)
class TokenSettings:
    """Signing key and lifetimes, fixed for the life of the process."""

    secret: str
    issuer: str
    audience: str
    access_ttl: timedelta
    refresh_ttl: timedelta

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenSettings":
        if not settings.jwt_secret:
            raise ValueError("jwt_secret is not configured")
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
        )


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class AccessClaims:
    """Identity carried by a verified access token."""

    user_id: str
    email: str
    first_name: str
    last_name: str
    expires_at: datetime
    jti: Optional[str] = None


class TokenCodec:
    """Mints and verifies HS256 access tokens and opaque refresh tokens.

    Stateless apart from the injected key material and clock. Every
    verification failure collapses to ``None`` so callers cannot learn which
    check rejected a token.
    """

    def __init__(self, config: TokenSettings, clock: Optional[Clock] = None) -> None:
        self.config = config
        self.clock = clock or SystemClock()

    def mint_access_token(self, account: Account) -> AccessToken:
        now = self.clock.now()
        # exp is whole seconds; advertise exactly what the token enforces
        expires_at = (now + self.config.access_ttl).replace(microsecond=0)
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "sub": account.id,
            "email": account.email,
            "given_name": account.first_name,
            "family_name": account.last_name,
            "token_type": "access",
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return AccessToken(value=self._encode_jwt(payload), expires_at=expires_at, jti=jti)

    @staticmethod
    def mint_refresh_token() -> str:
        return secrets.token_urlsafe(_REFRESH_TOKEN_BYTES)

    def validate_access_token(self, token: str) -> Optional[AccessClaims]:
        """Verify signature, issuer, audience and expiry."""
        payload = self._decode_jwt(token, verify_exp=True)
        return self._claims(payload) if payload else None

    def parse_expired_token(self, token: str) -> Optional[AccessClaims]:
        """Verify everything except expiry.

        Only for flows that need the identity behind an access token the
        client still holds after it lapsed; never grants access by itself.
        """
        payload = self._decode_jwt(token, verify_exp=False)
        return self._claims(payload) if payload else None

    def _claims(self, payload: dict[str, Any]) -> AccessClaims:
        return AccessClaims(
            user_id=str(payload["sub"]),
            email=payload.get("email", ""),
            first_name=payload.get("given_name", ""),
            last_name=payload.get("family_name", ""),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            jti=payload.get("jti"),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.config.secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, verify_exp: bool) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion ("none", RS/HS swaps)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.debug("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.debug("jwt_invalid_algorithm")
            return None

        try:
            signature_ok = hmac.compare_digest(
                self._sign(f"{header_b64}.{payload_b64}"), sig_b64
            )
        except TypeError:
            # compare_digest refuses non-ASCII str input
            signature_ok = False
        if not signature_ok:
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.debug("jwt_payload_decode_failed")
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.config.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.config.audience in aud
        else:
            valid_aud = aud == self.config.audience
        if not valid_aud:
            return None
        if payload.get("token_type") != "access" or not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if verify_exp and exp_ts <= self.clock.now().timestamp():
            return None
        return payload
