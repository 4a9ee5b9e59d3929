"""Tests for the startup gate that waits for the events socket."""

import asyncio
from unittest.mock import MagicMock

import pytest

from main import wait_until_connected


def _ws_client():
    client = MagicMock()
    client.connected = asyncio.Event()
    return client


class TestWaitUntilConnected:
    @pytest.mark.asyncio
    async def test_returns_once_socket_opens(self):
        client = _ws_client()
        stop_event = asyncio.Event()
        waiter = asyncio.create_task(wait_until_connected(client, stop_event))
        await asyncio.sleep(0)

        assert not waiter.done()

        client.connected.set()

        assert await asyncio.wait_for(waiter, timeout=1) is True

    @pytest.mark.asyncio
    async def test_stop_before_connect_gives_up(self):
        client = _ws_client()
        stop_event = asyncio.Event()
        waiter = asyncio.create_task(wait_until_connected(client, stop_event))
        await asyncio.sleep(0)

        stop_event.set()

        assert await asyncio.wait_for(waiter, timeout=1) is False
        assert not client.connected.is_set()
