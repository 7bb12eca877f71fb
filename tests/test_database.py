import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from reservation_service.database import classify_db_error, transaction
from reservation_service.errors import StorageUnavailable, TransientContention


class FakePgError(Exception):
    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate


@pytest.mark.parametrize(
    "orig",
    [
        Exception("database is locked"),
        FakePgError("canceling statement due to lock timeout", "55P03"),
        FakePgError("could not serialize access", "40001"),
        FakePgError("deadlock detected", "40P01"),
    ],
)
def test_lock_waits_and_serialization_failures_are_transient(orig):
    error = classify_db_error(OperationalError("UPDATE skus", {}, orig))
    assert isinstance(error, TransientContention)


def test_other_driver_errors_are_storage_unavailable():
    orig = FakePgError("connection refused", "08006")
    error = classify_db_error(OperationalError("SELECT 1", {}, orig))
    assert isinstance(error, StorageUnavailable)


@pytest.mark.asyncio
async def test_transaction_maps_driver_errors(db):
    with pytest.raises(StorageUnavailable):
        async with transaction() as session:
            await session.execute(text("SELECT * FROM no_such_table"))
