"""Tests for AccountService: credentials, profile caching and invalidation."""

from dataclasses import replace

import pytest

from conftest import TEST_PASSWORD
from authcore.service.identity import AccountService
from authcore.storage.errors import DuplicateAccount, StorageUnavailable
from authcore.storage.memory import MemoryStore
from authcore.storage.models import AccountProfile


class DictCache:
    """In-process stand-in for the Redis session cache."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ttl_seconds=None):
        self.data[key] = value
        self.ttls[key] = ttl_seconds

    async def remove(self, key):
        self.data.pop(key, None)


class BrokenCache:
    """Behaves like RedisCache with Redis unreachable: every read misses."""

    async def get(self, key):
        return None

    async def set(self, key, value, ttl_seconds=None):
        return None

    async def remove(self, key):
        return None


@pytest.fixture
def cache():
    return DictCache()


@pytest.fixture
def service(cache, clock):
    return AccountService(MemoryStore(), cache, clock=clock, profile_ttl_seconds=120)


@pytest.fixture
def user(service):
    return service.create_account(
        "Someone@Example.com", TEST_PASSWORD, first_name=" Sam ", last_name="Doe"
    )


class TestCreateAccount:
    def test_email_normalized_and_names_trimmed(self, user):
        assert user.email == "someone@example.com"
        assert user.first_name == "Sam"
        assert user.is_active is True

    def test_password_stored_as_argon2id(self, service, user):
        stored_hash, algo = service.store.get_password_record(user.id)
        assert algo == "argon2id"
        assert stored_hash.startswith("$argon2id$")
        assert TEST_PASSWORD not in stored_hash

    def test_duplicate_email(self, service, user):
        with pytest.raises(DuplicateAccount):
            service.create_account("SOMEONE@example.com", "other-password")

    @pytest.mark.parametrize("email,password", [("", "pw"), ("plain", "pw"), ("a@b.c", "")])
    def test_missing_fields(self, service, email, password):
        with pytest.raises(ValueError):
            service.create_account(email, password)

    def test_failed_credential_write_discards_account(self, clock):
        class NoCredentialStore(MemoryStore):
            def save_password(self, user_id, password_hash, password_algo):
                raise StorageUnavailable("credentials unavailable")

        service = AccountService(NoCredentialStore(), clock=clock)

        with pytest.raises(StorageUnavailable):
            service.create_account("someone@example.com", TEST_PASSWORD)

        assert service.store.get_account_by_email("someone@example.com") is None
        assert service.store.accounts == {}


class TestVerifyCredentials:
    def test_valid_credentials(self, service, user):
        found = service.verify_credentials("someone@example.com", TEST_PASSWORD)
        assert found.id == user.id

    def test_wrong_password(self, service, user):
        assert service.verify_credentials("someone@example.com", "nope") is None

    def test_unknown_email(self, service):
        assert service.verify_credentials("ghost@example.com", TEST_PASSWORD) is None

    async def test_inactive_account(self, service, user):
        await service.set_active(user.id, False)
        assert service.verify_credentials("someone@example.com", TEST_PASSWORD) is None

    def test_corrupt_hash(self, service, user):
        service.store.save_password(user.id, "not-a-hash", "argon2id")
        assert service.verify_credentials("someone@example.com", TEST_PASSWORD) is None

    def test_foreign_algorithm(self, service, user):
        service.store.save_password(user.id, "whatever", "bcrypt")
        assert service.verify_credentials("someone@example.com", TEST_PASSWORD) is None


class TestProfileCache:
    async def test_read_through_populates_both_keys(self, service, cache, user):
        profile = await service.get_profile(user.id)
        by_email = await service.get_profile_by_email("SOMEONE@example.com")

        assert profile == AccountProfile.from_account(user)
        assert by_email == profile
        assert cache.data[f"user:{user.id}"]["email"] == "someone@example.com"
        assert "user:email:someone@example.com" in cache.data
        assert cache.ttls[f"user:{user.id}"] == 120

    async def test_cached_profile_served_without_store(self, service, cache, user):
        await service.get_profile(user.id)
        service.store.accounts.clear()

        cached = await service.get_profile(user.id)

        assert cached.id == user.id

    async def test_update_invalidates_old_and_new_keys(self, service, cache, user):
        await service.get_profile(user.id)
        await service.get_profile_by_email(user.email)

        renamed = replace(user, email="renamed@example.com", first_name="Samuel")
        assert await service.update_account(renamed) is True

        assert cache.data == {}
        profile = await service.get_profile(user.id)
        assert profile.first_name == "Samuel"
        assert profile.email == "renamed@example.com"

    async def test_set_active_invalidates(self, service, cache, user):
        await service.get_profile(user.id)

        await service.set_active(user.id, False)

        assert (await service.get_profile(user.id)).is_active is False

    async def test_record_login(self, service, clock, user):
        assert await service.record_login(user) is True
        assert service.find_by_id(user.id).last_login_at == clock.now()

    async def test_missing_account(self, service, cache):
        assert await service.get_profile("missing") is None
        assert await service.get_profile_by_email("missing@example.com") is None
        assert cache.data == {}

    async def test_cache_outage_falls_back_to_store(self, clock):
        service = AccountService(MemoryStore(), BrokenCache(), clock=clock)
        account = service.create_account("x@example.com", TEST_PASSWORD)

        profile = await service.get_profile(account.id)

        assert profile.email == "x@example.com"

    async def test_no_cache_configured(self, clock):
        service = AccountService(MemoryStore(), None, clock=clock)
        account = service.create_account("y@example.com", TEST_PASSWORD)
        assert (await service.get_profile(account.id)).id == account.id
        await service.invalidate(account.id, account.email)
