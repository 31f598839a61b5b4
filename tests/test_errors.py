import pytest

from authcore.service.errors import (
    AuthenticationError,
    AuthFailure,
    ConflictError,
    ServiceError,
    ServiceUnavailableError,
    ValidationError,
    error_for_failure,
)
from authcore.storage.errors import (
    ConstraintViolation,
    DuplicateAccount,
    DuplicateToken,
    StorageError,
    StorageUnavailable,
)


@pytest.mark.parametrize(
    "failure,error_cls,status",
    [
        (AuthFailure.INVALID_CREDENTIALS, AuthenticationError, 401),
        (AuthFailure.INVALID_REFRESH_TOKEN, AuthenticationError, 401),
        (AuthFailure.INVALID_TOKEN, AuthenticationError, 401),
        (AuthFailure.DUPLICATE_ACCOUNT, ConflictError, 409),
        (AuthFailure.INVALID_ACCOUNT_DATA, ValidationError, 400),
        (AuthFailure.STORAGE_FAILURE, ServiceUnavailableError, 503),
    ],
)
def test_every_failure_has_an_error(failure, error_cls, status):
    error = error_for_failure(failure)
    assert isinstance(error, error_cls)
    assert error.status_code == status
    assert error.detail == {"failure": failure.value}


def test_credential_failures_share_a_message():
    # Same text whatever the internal cause, so the response does not reveal which accounts exist
    assert (
        error_for_failure(AuthFailure.INVALID_CREDENTIALS).message
        == "Invalid email or password"
    )


def test_service_error_overrides():
    error = ServiceError("nope", status_code=418, error_code="teapot", detail={"a": 1})
    assert error.status_code == 418
    assert error.error_code == "teapot"
    assert error.detail == {"a": 1}
    assert str(error) == "nope"


def test_storage_error_hierarchy():
    for cls in (ConstraintViolation, DuplicateAccount, DuplicateToken, StorageUnavailable):
        assert issubclass(cls, StorageError)
    assert issubclass(DuplicateToken, ConstraintViolation)


def test_storage_error_carries_detail():
    error = StorageUnavailable("database unavailable", {"error": "timeout"})
    assert error.message == "database unavailable"
    assert error.detail == {"error": "timeout"}
