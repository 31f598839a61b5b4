from __future__ import annotations

from dataclasses import replace
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authcore.logging import get_logger
from authcore.service.clock import Clock, SystemClock
from authcore.storage.errors import StorageError
from authcore.storage.models import Account, AccountProfile

logger = get_logger(__name__)

_PASSWORD_ALGO = "argon2id"
DEFAULT_PROFILE_TTL_SECONDS = 30 * 60


class AccountStore(Protocol):
    def create_account(
        self, email: str, first_name: str = "", last_name: str = ""
    ) -> Account: ...

    def get_account(self, user_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account(self, account: Account) -> bool: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def delete_account(self, user_id: str) -> bool: ...


class SessionCache(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...

    async def remove(self, key: str) -> None: ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _profile_key(user_id: str) -> str:
    return f"user:{user_id}"


def _email_key(email: str) -> str:
    return f"user:email:{email}"


class AccountService:
    """Account lookups, credential checks and cached profiles.

    The cache only ever serves ``AccountProfile`` reads; credential checks and
    the active-flag check made before minting tokens always go to the store.
    """

    def __init__(
        self,
        store: AccountStore,
        cache: Optional[SessionCache] = None,
        *,
        clock: Optional[Clock] = None,
        profile_ttl_seconds: int = DEFAULT_PROFILE_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.cache = cache
        self.clock = clock or SystemClock()
        self.profile_ttl_seconds = profile_ttl_seconds
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), _PASSWORD_ALGO

    def _verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != _PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def verify_credentials(self, email: str, password: str) -> Optional[Account]:
        """Return the account only if it exists, is active and the password matches."""
        account = self.store.get_account_by_email(normalize_email(email))
        if not account:
            logger.info("credentials_rejected", reason="account_missing")
            return None
        if not account.is_active:
            logger.info("credentials_rejected", reason="account_inactive", user_id=account.id)
            return None
        if not self._verify_password(account.id, password):
            logger.info("credentials_rejected", reason="password_mismatch", user_id=account.id)
            return None
        return account

    def create_account(
        self, email: str, password: str, first_name: str = "", last_name: str = ""
    ) -> Account:
        """Create an account with a hashed password.

        Raises ``ValueError`` for missing fields and ``DuplicateAccount`` when
        the email is taken.
        """
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValueError("a valid email is required")
        if not password:
            raise ValueError("password is required")
        pwd_hash, algo = self._hash_password(password)
        account = self.store.create_account(
            normalized, first_name=first_name.strip(), last_name=last_name.strip()
        )
        try:
            self.store.save_password(account.id, pwd_hash, algo)
        except StorageError:
            # Every stored account must have credentials
            logger.error("account_credentials_write_failed", user_id=account.id)
            self._discard_account(account.id)
            raise
        logger.info("account_created", user_id=account.id)
        return account

    def _discard_account(self, user_id: str) -> None:
        try:
            self.store.delete_account(user_id)
        except StorageError as exc:
            logger.error("account_discard_failed", user_id=user_id, error=str(exc))

    def find_by_id(self, user_id: str) -> Optional[Account]:
        return self.store.get_account(user_id)

    async def update_account(self, account: Account) -> bool:
        previous = self.store.get_account(account.id)
        updated = self.store.update_account(account)
        if updated:
            await self.invalidate(account.id, account.email)
            if previous and previous.email != account.email:
                await self.invalidate(account.id, previous.email)
        return updated

    async def record_login(self, account: Account) -> bool:
        return await self.update_account(
            replace(account, last_login_at=self.clock.now())
        )

    async def set_active(self, user_id: str, active: bool) -> Optional[Account]:
        account = self.store.get_account(user_id)
        if not account:
            return None
        changed = replace(account, is_active=active)
        if not await self.update_account(changed):
            return None
        return changed

    async def get_profile(self, user_id: str) -> Optional[AccountProfile]:
        if self.cache:
            cached = await self.cache.get(_profile_key(user_id))
            if isinstance(cached, dict):
                return AccountProfile.from_dict(cached)
        account = self.store.get_account(user_id)
        if not account:
            return None
        profile = AccountProfile.from_account(account)
        if self.cache:
            await self.cache.set(
                _profile_key(user_id), profile.to_dict(), self.profile_ttl_seconds
            )
        return profile

    async def get_profile_by_email(self, email: str) -> Optional[AccountProfile]:
        normalized = normalize_email(email)
        if self.cache:
            cached = await self.cache.get(_email_key(normalized))
            if isinstance(cached, dict):
                return AccountProfile.from_dict(cached)
        account = self.store.get_account_by_email(normalized)
        if not account:
            return None
        profile = AccountProfile.from_account(account)
        if self.cache:
            await self.cache.set(
                _email_key(normalized), profile.to_dict(), self.profile_ttl_seconds
            )
        return profile

    async def invalidate(self, user_id: str, email: str) -> None:
        if not self.cache:
            return
        await self.cache.remove(_profile_key(user_id))
        await self.cache.remove(_email_key(email))
