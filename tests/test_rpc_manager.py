"""
Unit tests for AsyncRPCManager (endpoint selection and rate-limit failover)
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rpc_manager import AsyncRPCManager


def fake_w3(connected=True, error=None):
    w3 = MagicMock()
    if error is not None:
        w3.is_connected = AsyncMock(side_effect=error)
    else:
        w3.is_connected = AsyncMock(return_value=connected)
    return w3


class TestConnect:
    def test_uses_first_reachable_endpoint(self):
        rpc = AsyncRPCManager(endpoints=["http://a", "http://b"])
        with patch.object(rpc, "_build", side_effect=[fake_w3(False), fake_w3(True)]):
            assert asyncio.run(rpc.connect()) is True
        assert rpc.current_url == "http://b"

    def test_connection_exception_moves_on(self):
        rpc = AsyncRPCManager(endpoints=["http://a", "http://b"])
        with patch.object(rpc, "_build", side_effect=[fake_w3(error=OSError("refused")), fake_w3(True)]):
            assert asyncio.run(rpc.connect()) is True
        assert rpc.current_index == 1

    def test_returns_false_when_all_down(self):
        rpc = AsyncRPCManager(endpoints=["http://a", "http://b"])
        with patch.object(rpc, "_build", side_effect=[fake_w3(False), fake_w3(False)]):
            assert asyncio.run(rpc.connect()) is False

    def test_no_endpoints(self):
        rpc = AsyncRPCManager(endpoints=[])
        assert asyncio.run(rpc.connect()) is False
        assert rpc.current_url is None


class TestRateLimit:
    @pytest.mark.parametrize("msg", [
        "429 Client Error: Too Many Requests",
        "403 Forbidden",
        "{'code': -32005, 'message': 'limit exceeded'}",
        "daily quota reached",
    ])
    def test_detects_rate_limit_errors(self, msg):
        assert AsyncRPCManager(endpoints=[]).is_rate_limit_error(Exception(msg))

    def test_plain_revert_is_not_rate_limit(self):
        assert not AsyncRPCManager(endpoints=[]).is_rate_limit_error(Exception("execution reverted"))

    def test_rotates_after_three_strikes(self):
        rpc = AsyncRPCManager(endpoints=["http://a", "http://b"])
        with patch.object(rpc, "_build", return_value=MagicMock()) as build:
            results = [asyncio.run(rpc.handle_rate_limit()) for _ in range(3)]
        assert results == [False, False, True]
        assert rpc.current_index == 1
        assert rpc.strike_count == 0
        build.assert_called_once_with("http://b")

    def test_wraps_around_endpoint_list(self):
        rpc = AsyncRPCManager(endpoints=["http://a", "http://b"])
        rpc.current_index = 1
        with patch.object(rpc, "_build", return_value=MagicMock()):
            for _ in range(3):
                asyncio.run(rpc.handle_rate_limit())
        assert rpc.current_url == "http://a"

    def test_single_endpoint_never_rotates(self):
        rpc = AsyncRPCManager(endpoints=["http://a"])
        results = [asyncio.run(rpc.handle_rate_limit()) for _ in range(4)]
        assert results == [False] * 4
        assert rpc.current_index == 0
