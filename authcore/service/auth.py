from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from authcore.logging import get_logger
from authcore.service.clock import Clock
from authcore.service.errors import AuthFailure, error_for_failure
from authcore.service.identity import AccountService
from authcore.service.tokens import AccessClaims, TokenCodec
from authcore.storage.errors import DuplicateAccount, StorageError
from authcore.storage.models import Account, AccountProfile, RefreshToken

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def add(self, token: RefreshToken) -> None: ...

    def get_by_token(self, token_value: str) -> Optional[RefreshToken]: ...

    def revoke(self, token_value: str, *, now: Optional[datetime] = None) -> bool: ...

    def revoke_all_for_user(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> int: ...

    def rotate(
        self,
        token_value: str,
        replacement: RefreshToken,
        *,
        now: Optional[datetime] = None,
    ) -> bool: ...

    def list_active_for_user(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> List[RefreshToken]: ...

    def sweep_expired(self, *, now: Optional[datetime] = None) -> int: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    user: AccountProfile
    token_type: str = "bearer"

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "access_token_expires_at": self.access_token_expires_at.isoformat(),
            "refresh_token_expires_at": self.refresh_token_expires_at.isoformat(),
            "user": self.user.to_dict(),
        }


@dataclass(frozen=True)
class AuthResult:
    pair: Optional[TokenPair] = None
    failure: Optional[AuthFailure] = None

    @property
    def ok(self) -> bool:
        return self.pair is not None and self.failure is None

    @classmethod
    def success(cls, pair: TokenPair) -> "AuthResult":
        return cls(pair=pair)

    @classmethod
    def failed(cls, failure: AuthFailure) -> "AuthResult":
        return cls(failure=failure)

    def raise_for_failure(self) -> TokenPair:
        if self.failure is not None:
            raise error_for_failure(self.failure)
        assert self.pair is not None
        return self.pair


class TokenLifecycleManager:
    """Issues, rotates and revokes token pairs.

    Holds no mutable state of its own; every transition goes through the
    refresh-token store, whose ``rotate`` is the compare-and-set that keeps a
    refresh token single-use under concurrent redemption.

    Operations return results instead of raising. Authentication rejections
    carry no reason outward (the reason is only logged); storage trouble is
    reported as ``AuthFailure.STORAGE_FAILURE`` so callers can retry.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        accounts: AccountService,
        codec: TokenCodec,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.codec = codec
        self.clock = clock or codec.clock

    @property
    def refresh_ttl(self) -> timedelta:
        return self.codec.config.refresh_ttl

    def _mint_pair(self, account: Account) -> tuple[TokenPair, RefreshToken]:
        # Both halves exist before anything is persisted
        access = self.codec.mint_access_token(account)
        row = RefreshToken.new(
            self.codec.mint_refresh_token(),
            account.id,
            self.refresh_ttl,
            now=self.clock.now(),
        )
        pair = TokenPair(
            access_token=access.value,
            refresh_token=row.token_value,
            access_token_expires_at=access.expires_at,
            refresh_token_expires_at=row.expiry_date,
            user=AccountProfile.from_account(account),
        )
        return pair, row

    def _issue(self, account: Account) -> AuthResult:
        pair, row = self._mint_pair(account)
        try:
            self.store.add(row)
        except StorageError as exc:
            logger.error(
                "refresh_token_persist_failed",
                user_id=account.id,
                error=exc.message,
                detail=exc.detail,
            )
            return AuthResult.failed(AuthFailure.STORAGE_FAILURE)
        return AuthResult.success(pair)

    async def login(self, email: str, password: str) -> AuthResult:
        try:
            account = self.accounts.verify_credentials(email, password)
        except StorageError as exc:
            logger.error("login_storage_failed", error=exc.message)
            return AuthResult.failed(AuthFailure.STORAGE_FAILURE)
        if not account:
            return AuthResult.failed(AuthFailure.INVALID_CREDENTIALS)
        result = self._issue(account)
        if not result.ok:
            return result
        try:
            await self.accounts.record_login(account)
        except StorageError as exc:
            # Tokens are already issued; a stale last-login is not worth failing over
            logger.warning("record_login_failed", user_id=account.id, error=exc.message)
        logger.info("login_succeeded", user_id=account.id)
        return result

    async def register(
        self,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
    ) -> AuthResult:
        try:
            account = self.accounts.create_account(
                email, password, first_name=first_name, last_name=last_name
            )
        except DuplicateAccount:
            logger.info("registration_rejected", reason="duplicate_account")
            return AuthResult.failed(AuthFailure.DUPLICATE_ACCOUNT)
        except ValueError as exc:
            logger.info("registration_rejected", reason="invalid_fields", error=str(exc))
            return AuthResult.failed(AuthFailure.INVALID_ACCOUNT_DATA)
        except StorageError as exc:
            logger.error("registration_storage_failed", error=exc.message)
            return AuthResult.failed(AuthFailure.STORAGE_FAILURE)
        return self._issue(account)

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Redeem a refresh token for a new pair.

        The presented token is dead once this succeeds, whether or not the
        caller ever delivers the new pair.
        """
        if not refresh_token:
            return AuthResult.failed(AuthFailure.INVALID_REFRESH_TOKEN)
        now = self.clock.now()
        try:
            current = self.store.get_by_token(refresh_token)
            if not current:
                logger.info("refresh_token_rejected", reason="not_found")
                return AuthResult.failed(AuthFailure.INVALID_REFRESH_TOKEN)
            if current.is_revoked:
                logger.warning(
                    "refresh_token_rejected",
                    reason="revoked",
                    user_id=current.user_id,
                    row_id=current.id,
                )
                return AuthResult.failed(AuthFailure.INVALID_REFRESH_TOKEN)
            if current.is_expired(now):
                logger.info(
                    "refresh_token_rejected",
                    reason="expired",
                    user_id=current.user_id,
                    row_id=current.id,
                )
                return AuthResult.failed(AuthFailure.INVALID_REFRESH_TOKEN)

            account = self.accounts.find_by_id(current.user_id)
            if not account or not account.is_active:
                logger.info(
                    "refresh_token_rejected",
                    reason="account_missing" if not account else "account_inactive",
                    user_id=current.user_id,
                )
                return AuthResult.failed(AuthFailure.INVALID_REFRESH_TOKEN)

            pair, replacement = self._mint_pair(account)
            if not self.store.rotate(refresh_token, replacement, now=now):
                # Another redemption of the same token got there first
                logger.warning(
                    "refresh_token_rejected",
                    reason="concurrent_redemption",
                    user_id=current.user_id,
                    row_id=current.id,
                )
                return AuthResult.failed(AuthFailure.INVALID_REFRESH_TOKEN)
        except StorageError as exc:
            logger.error("refresh_storage_failed", error=exc.message, detail=exc.detail)
            return AuthResult.failed(AuthFailure.STORAGE_FAILURE)
        logger.info("refresh_token_rotated", user_id=account.id, row_id=current.id)
        return AuthResult.success(pair)

    async def revoke_one(self, refresh_token: str) -> bool:
        """Log out a single session. Unknown or already revoked tokens succeed."""
        try:
            changed = self.store.revoke(refresh_token, now=self.clock.now())
        except StorageError as exc:
            logger.error("refresh_token_revoke_failed", error=exc.message)
            return False
        if changed:
            logger.info("refresh_token_revoked")
        return True

    async def revoke_all(self, user_id: str) -> bool:
        try:
            count = self.store.revoke_all_for_user(user_id, now=self.clock.now())
        except StorageError as exc:
            logger.error("refresh_token_revoke_all_failed", user_id=user_id, error=exc.message)
            return False
        logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=count)
        return True

    async def cleanup(self) -> Optional[int]:
        """Delete expired, unrevoked refresh tokens. Returns None on storage failure."""
        try:
            removed = self.store.sweep_expired(now=self.clock.now())
        except StorageError as exc:
            logger.error("token_cleanup_failed", error=exc.message, detail=exc.detail)
            return None
        logger.info("token_cleanup_completed", removed=removed)
        return removed

    def get_current_user(self, access_token: str) -> Optional[AccessClaims]:
        claims = self.codec.validate_access_token(access_token)
        if claims is None:
            logger.debug("access_token_rejected")
        return claims

    async def deactivate_account(self, user_id: str) -> bool:
        """Mark the account inactive and revoke every refresh token it holds.

        Access tokens already handed out stay valid until they lapse.
        """
        try:
            account = await self.accounts.set_active(user_id, False)
        except StorageError as exc:
            logger.error("account_deactivate_failed", user_id=user_id, error=exc.message)
            return False
        if not account:
            return False
        revoked = await self.revoke_all(user_id)
        logger.info("account_deactivated", user_id=user_id, sessions_revoked=revoked)
        return revoked

    async def activate_account(self, user_id: str) -> bool:
        try:
            account = await self.accounts.set_active(user_id, True)
        except StorageError as exc:
            logger.error("account_activate_failed", user_id=user_id, error=exc.message)
            return False
        if account:
            logger.info("account_activated", user_id=user_id)
        return account is not None

    async def list_active_sessions(self, user_id: str) -> Optional[List[RefreshToken]]:
        try:
            return self.store.list_active_for_user(user_id, now=self.clock.now())
        except StorageError as exc:
            logger.error("list_sessions_failed", user_id=user_id, error=exc.message)
            return None


__all__ = [
    "AuthResult",
    "RefreshTokenStore",
    "TokenLifecycleManager",
    "TokenPair",
]
