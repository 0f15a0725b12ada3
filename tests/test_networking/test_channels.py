"""Tests for the in-process broadcast channel."""

import asyncio

import pytest


class TestLocalBroadcastChannel:
    async def test_post_reaches_others_not_self(self, hub):
        got_a, got_b, got_c = [], [], []
        a = hub.join("room", got_a.append)
        hub.join("room", got_b.append)
        hub.join("other", got_c.append)
        a.post_message("hello")
        await asyncio.sleep(0)
        assert got_a == []
        assert got_b == ["hello"]
        assert got_c == []

    async def test_delivery_is_deferred(self, hub):
        got = []
        a = hub.join("room", lambda text: None)
        hub.join("room", got.append)
        a.post_message("x")
        assert got == []
        await asyncio.sleep(0)
        assert got == ["x"]

    async def test_close_leaves_hub(self, hub):
        a = hub.join("room", lambda text: None)
        b = hub.join("room", lambda text: None)
        b.close()
        assert hub.members("room") == [a]
        assert b.closed
        a.close()
        assert hub.members("room") == []

    async def test_post_on_closed_channel_raises(self, hub):
        a = hub.join("room", lambda text: None)
        a.close()
        with pytest.raises(RuntimeError):
            a.post_message("x")
