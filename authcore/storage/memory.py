from __future__ import annotations

import json
import os
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import (
    ConstraintViolation,
    DuplicateAccount,
    DuplicateToken,
    StorageUnavailable,
)
from authcore.storage.models import Account, RefreshToken, utcnow


class MemoryStore:
    """In-memory account and refresh-token store for tests and local runs.

    Every operation runs under one re-entrant lock, so ``rotate`` is atomic
    with respect to any other call on the same store. When ``fs_root`` is
    given the full state is snapshotted to JSON after each mutation.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # Keyed by token_value, which doubles as the uniqueness constraint
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @contextmanager
    def _committing(self) -> Iterator[None]:
        """Persist the mutations made in the block, or undo them if that fails.

        Rows are replaced rather than edited in place, so a shallow copy of
        each table is enough to restore the prior state. Callers hold
        ``_data_lock``.
        """
        snapshot = (
            dict(self.accounts),
            dict(self.credentials),
            dict(self.refresh_tokens),
        )
        try:
            yield
            self._persist_state()
        except Exception:
            self.accounts, self.credentials, self.refresh_tokens = snapshot
            raise

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # accounts
    def create_account(
        self, email: str, first_name: str = "", last_name: str = ""
    ) -> Account:
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise DuplicateAccount("email already exists", {"field": "email"})
            account = Account.new(email, first_name=first_name, last_name=last_name)
            with self._committing():
                self.accounts[account.id] = account
            return replace(account)

    def get_account(self, user_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(user_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == email), None
            )
            return replace(account) if account else None

    def update_account(self, account: Account) -> bool:
        with self._data_lock:
            if account.id not in self.accounts:
                return False
            clash = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.email == account.email and a.id != account.id
                ),
                None,
            )
            if clash:
                raise DuplicateAccount("email already exists", {"field": "email"})
            with self._committing():
                self.accounts[account.id] = replace(account)
            return True

    def delete_account(self, user_id: str) -> bool:
        """Remove an account with its credentials and refresh tokens."""
        with self._data_lock:
            if user_id not in self.accounts:
                return False
            with self._committing():
                self.accounts.pop(user_id)
                self.credentials.pop(user_id, None)
                self.refresh_tokens = {
                    value: token
                    for value, token in self.refresh_tokens.items()
                    if token.user_id != user_id
                }
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"user_id": user_id}
                )
            with self._committing():
                self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # refresh tokens
    def add(self, token: RefreshToken) -> None:
        with self._data_lock, self._committing():
            self._insert_token(token)

    def _insert_token(self, token: RefreshToken) -> None:
        if token.token_value in self.refresh_tokens:
            raise DuplicateToken("refresh token value already exists")
        if token.user_id not in self.accounts:
            raise ConstraintViolation(
                "refresh token owner missing", {"user_id": token.user_id}
            )
        self.refresh_tokens[token.token_value] = replace(token)

    def get_by_token(self, token_value: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_value)
            return replace(token) if token else None

    def revoke(self, token_value: str, *, now: Optional[datetime] = None) -> bool:
        """Mark a token revoked. Returns False when absent or already revoked."""
        with self._data_lock:
            token = self.refresh_tokens.get(token_value)
            if not token or token.is_revoked:
                return False
            with self._committing():
                self.refresh_tokens[token_value] = replace(
                    token, is_revoked=True, revoked_at=now or utcnow()
                )
            return True

    def revoke_all_for_user(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> int:
        revoked_at = now or utcnow()
        with self._data_lock:
            targets = [
                token
                for token in self.refresh_tokens.values()
                if token.user_id == user_id and not token.is_revoked
            ]
            if targets:
                with self._committing():
                    for token in targets:
                        self.refresh_tokens[token.token_value] = replace(
                            token, is_revoked=True, revoked_at=revoked_at
                        )
            return len(targets)

    def rotate(
        self,
        token_value: str,
        replacement: RefreshToken,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """Revoke ``token_value`` and insert ``replacement`` as one step.

        Returns False, changing nothing, when the presented token is no longer
        active; of two racing callers only the first one wins.
        """
        current = now or utcnow()
        with self._data_lock:
            token = self.refresh_tokens.get(token_value)
            if not token or not token.is_active(current):
                return False
            with self._committing():
                self._insert_token(replacement)
                self.refresh_tokens[token_value] = replace(
                    token, is_revoked=True, revoked_at=current
                )
            return True

    def list_active_for_user(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> List[RefreshToken]:
        current = now or utcnow()
        with self._data_lock:
            active = [
                replace(t)
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and t.is_active(current)
            ]
        return sorted(active, key=lambda t: t.created_at, reverse=True)

    def sweep_expired(self, *, now: Optional[datetime] = None) -> int:
        """Delete expired, never-revoked rows. Revoked rows are kept for audit."""
        current = now or utcnow()
        with self._data_lock:
            stale = [
                value
                for value, token in self.refresh_tokens.items()
                if token.is_expired(current) and not token.is_revoked
            ]
            if stale:
                with self._committing():
                    for value in stale:
                        self.refresh_tokens.pop(value, None)
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StorageUnavailable(
                "failed to persist in-memory state", {"error": str(exc)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {}
        for raw in data.get("refresh_tokens", []):
            token = self._deserialize_refresh_token(raw)
            self.refresh_tokens[token.token_value] = token
        self.logger.info(
            "memory_store_state_loaded",
            accounts=len(self.accounts),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "is_active": account.is_active,
            "created_at": self._serialize_datetime(account.created_at),
            "last_login_at": self._serialize_datetime(account.last_login_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]) or utcnow(),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "token_value": token.token_value,
            "user_id": token.user_id,
            "created_at": self._serialize_datetime(token.created_at),
            "expiry_date": self._serialize_datetime(token.expiry_date),
            "is_revoked": token.is_revoked,
            "revoked_at": self._serialize_datetime(token.revoked_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=str(data["id"]),
            token_value=data["token_value"],
            user_id=str(data["user_id"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expiry_date=self._deserialize_datetime(data["expiry_date"]),
            is_revoked=bool(data.get("is_revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )
