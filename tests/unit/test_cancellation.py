"""
Tests for cancellation tokens.
"""
import asyncio
import time

import pytest

from drive_analytics.fetch.cancellation import CancellationToken
from drive_analytics.utils.exceptions import OperationCancelled


def test_token_state():
    token = CancellationToken(label="101")
    assert not token.cancelled
    assert "active" in repr(token)

    token.cancel()
    assert token.cancelled
    with pytest.raises(OperationCancelled):
        token.raise_if_cancelled()


def test_token_ids_are_unique():
    assert CancellationToken().id != CancellationToken().id


def test_run_returns_result():
    async def work():
        await asyncio.sleep(0)
        return 42

    async def scenario():
        return await CancellationToken().run(work())

    assert asyncio.run(scenario()) == 42


def test_run_propagates_errors():
    async def work():
        raise ValueError("bad page")

    async def scenario():
        await CancellationToken().run(work())

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_cancel_wakes_pending_call():
    """Cancelling interrupts a long await immediately."""
    finished = []

    async def slow():
        await asyncio.sleep(10)
        finished.append(True)

    async def scenario():
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        started = time.monotonic()
        with pytest.raises(OperationCancelled):
            await token.run(slow())
        return time.monotonic() - started

    elapsed = asyncio.run(scenario())
    assert elapsed < 1.0
    assert finished == []


def test_run_on_cancelled_token_does_not_start():
    async def scenario():
        token = CancellationToken()
        token.cancel()
        coro = asyncio.sleep(0)
        try:
            with pytest.raises(OperationCancelled):
                await token.run(coro)
        finally:
            coro.close()

    asyncio.run(scenario())


def test_sleep_completes_and_wakes_on_cancel():
    async def scenario():
        token = CancellationToken()
        await token.sleep(0.01)

        asyncio.get_running_loop().call_later(0.01, token.cancel)
        started = time.monotonic()
        with pytest.raises(OperationCancelled):
            await token.sleep(10)
        return time.monotonic() - started

    assert asyncio.run(scenario()) < 1.0
