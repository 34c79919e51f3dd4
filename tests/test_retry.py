import pytest
from pymongo.errors import ConnectionFailure

from ridehail.errors import PreconditionFailed, TransientStoreError
from ridehail.services.retry import with_retries
from ridehail.services.ride_store import store_errors


class Flaky:
    def __init__(self, failures, error=TransientStoreError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error()
        return "ok"


async def test_retries_transient_failures():
    operation = Flaky(failures=2)
    assert await with_retries(operation, attempts=3, base_delay=0) == "ok"
    assert operation.calls == 3


async def test_gives_up_after_attempts():
    operation = Flaky(failures=5)
    with pytest.raises(TransientStoreError):
        await with_retries(operation, attempts=3, base_delay=0)
    assert operation.calls == 3


async def test_precondition_failures_are_not_retried():
    operation = Flaky(failures=1, error=PreconditionFailed)
    with pytest.raises(PreconditionFailed):
        await with_retries(operation, attempts=3, base_delay=0)
    assert operation.calls == 1


def test_store_errors_maps_driver_failures():
    with pytest.raises(TransientStoreError) as exc_info:
        with store_errors("read ride"):
            raise ConnectionFailure("connection reset")
    assert exc_info.value.status_code == 503
    assert isinstance(exc_info.value.__cause__, ConnectionFailure)

    with pytest.raises(KeyError):
        with store_errors("read ride"):
            raise KeyError("not a store failure")
