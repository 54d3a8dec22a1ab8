"""Tests for auth providers and cancel tokens."""

import asyncio

import pytest

from converge import (
    AuthProvider,
    CancelToken,
    RefreshingTokenProvider,
    RequestCancelledError,
    StaticTokenProvider,
)


class TestStaticTokenProvider:
    """Tests for StaticTokenProvider."""

    def test_is_auth_provider(self) -> None:
        """Test that StaticTokenProvider satisfies the AuthProvider protocol."""
        assert isinstance(StaticTokenProvider(), AuthProvider)

    def test_set_and_clear(self) -> None:
        """Test setting and clearing the token."""
        auth = StaticTokenProvider()
        assert auth.get_bearer_token() is None
        auth.set_token("abc")
        assert auth.get_bearer_token() == "abc"
        auth.clear()
        assert auth.get_bearer_token() is None

    async def test_refresh_clears_rejected_token(self) -> None:
        """Test that a static token cannot be refreshed and is dropped."""
        auth = StaticTokenProvider("abc")
        assert await auth.refresh() is False
        assert auth.get_bearer_token() is None


class TestRefreshingTokenProvider:
    """Tests for RefreshingTokenProvider."""

    async def test_refresh_stores_new_token(self) -> None:
        """Test that a successful refresh replaces the token."""

        async def refresh_fn() -> str:
            return "fresh"

        auth = RefreshingTokenProvider(refresh_fn, token="old")
        assert await auth.refresh() is True
        assert auth.get_bearer_token() == "fresh"

    async def test_concurrent_refreshes_share_one_call(self) -> None:
        """Test that simultaneous refreshes make one call."""
        calls = 0
        gate = asyncio.Event()

        async def refresh_fn() -> str:
            nonlocal calls
            calls += 1
            await gate.wait()
            return "fresh"

        auth = RefreshingTokenProvider(refresh_fn)
        first = asyncio.create_task(auth.refresh())
        second = asyncio.create_task(auth.refresh())
        await asyncio.sleep(0)
        gate.set()

        assert await first is True
        assert await second is True
        assert calls == 1

    async def test_failing_refresh_returns_false(self) -> None:
        """Test that a failed refresh reports False and drops the token."""

        async def refresh_fn() -> str:
            raise RuntimeError("identity provider down")

        auth = RefreshingTokenProvider(refresh_fn, token="old")
        assert await auth.refresh() is False
        assert auth.get_bearer_token() is None


class TestCancelToken:
    """Tests for CancelToken."""

    def test_callbacks_run_once(self) -> None:
        """Test that cancelling twice runs callbacks once and keeps the first reason."""
        token = CancelToken()
        calls: list[str] = []
        token.add_callback(lambda: calls.append("a"))
        token.cancel("navigated away")
        token.cancel("again")
        assert calls == ["a"]
        assert token.cancelled is True
        assert token.reason == "navigated away"

    def test_removed_callback_not_run(self) -> None:
        """Test that a removed callback is not called."""
        token = CancelToken()
        calls: list[str] = []
        remove = token.add_callback(lambda: calls.append("a"))
        remove()
        token.cancel()
        assert calls == []

    def test_late_callback_runs_immediately(self) -> None:
        """Test that callbacks added after cancel run at once."""
        token = CancelToken()
        token.cancel()
        calls: list[str] = []
        token.add_callback(lambda: calls.append("late"))
        assert calls == ["late"]

    def test_raise_if_cancelled(self) -> None:
        """Test that raise_if_cancelled raises only after cancel."""
        token = CancelToken()
        token.raise_if_cancelled()
        token.cancel("stop")
        with pytest.raises(RequestCancelledError, match="stop"):
            token.raise_if_cancelled()
