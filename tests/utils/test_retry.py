# tests/utils/test_retry.py
import pytest

from chessmaster.utils.retry import retry_with_backoff


@pytest.mark.asyncio
async def test_retries_transient_errors_then_succeeds():
    calls = []

    @retry_with_backoff(attempts=3, initial_backoff_s=0, exceptions_to_catch=(ConnectionError,))
    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("blip")
        return "ok"

    assert await flaky() == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    calls = []

    @retry_with_backoff(attempts=2, initial_backoff_s=0, exceptions_to_catch=(ConnectionError,))
    async def always_down():
        calls.append(1)
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        await always_down()
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_other_errors_propagate_immediately():
    calls = []

    @retry_with_backoff(attempts=3, initial_backoff_s=0, exceptions_to_catch=(ConnectionError,))
    async def broken():
        calls.append(1)
        raise ValueError("bug")

    with pytest.raises(ValueError):
        await broken()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_predicate_rejecting_an_error_stops_retrying():
    calls = []

    @retry_with_backoff(
        attempts=3, initial_backoff_s=0, exceptions_to_catch=(ConnectionError,),
        retry_if=lambda e: "busy" in str(e), target="games",
    )
    async def store_call():
        calls.append(1)
        raise ConnectionError("disk I/O error")

    with pytest.raises(ConnectionError):
        await store_call()
    assert len(calls) == 1
