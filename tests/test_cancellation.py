"""Tests for CancellationToken."""

import asyncio

import pytest

from slidereel.exceptions import RenderCancelledError
from slidereel.render.cancellation import CancellationToken


class TestCancellationToken:
    """Tests for the one-shot cancellation signal."""

    def test_callbacks_run_once(self):
        """Test that registered callbacks fire once and repeated cancels are ignored."""
        token = CancellationToken()
        fired: list[str] = []
        token.register(lambda: fired.append("a"))

        token.cancel("client disconnected")
        token.cancel("again")

        assert fired == ["a"]
        assert token.cancelled
        assert token.reason == "client disconnected"

    def test_unregister(self):
        """Test that an unregistered callback does not fire."""
        token = CancellationToken()
        fired: list[str] = []
        unregister = token.register(lambda: fired.append("a"))

        unregister()
        token.cancel()

        assert fired == []

    def test_register_after_cancel_runs_immediately(self):
        """Test late registration."""
        token = CancellationToken()
        token.cancel()
        fired: list[str] = []

        token.register(lambda: fired.append("late"))

        assert fired == ["late"]

    def test_raise_if_cancelled(self):
        """Test the checkpoint helper."""
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("client disconnected")

        with pytest.raises(RenderCancelledError, match="client disconnected"):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_wait(self):
        """Test awaiting cancellation."""
        token = CancellationToken()
        asyncio.get_running_loop().call_soon(token.cancel)

        await asyncio.wait_for(token.wait(), timeout=1)

        assert token.cancelled
