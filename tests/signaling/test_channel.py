"""Tests for the websocket signaling channel."""

import asyncio
import json
import logging

import pytest

from duo_call.exceptions import SignalingChannelError
from duo_call.protocol import MessageType, create_join, create_leave
from duo_call.signaling.channel import SignalingChannel, build_signaling_url

URL = "ws://relay.test/ws/signaling"


class FakeWebSocket:
    """Websocket stand-in: frames fed with ``feed()``, sent frames recorded."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self.send_error = None
        self._incoming = asyncio.Queue()

    def feed(self, raw):
        self._incoming.put_nowait(raw)

    def finish(self):
        self._incoming.put_nowait(None)

    async def send(self, text):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(text)

    async def close(self):
        if not self.closed:
            self.closed = True
            self.finish()

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self._incoming.get()
        if raw is None:
            raise StopAsyncIteration
        return raw


def make_channel():
    websocket = FakeWebSocket()
    urls = []

    async def connector(url):
        urls.append(url)
        return websocket

    return SignalingChannel(URL, connector=connector), websocket, urls


async def collect(channel):
    return [message async for message in channel.messages()]


class TestBuildSignalingUrl:
    def test_adds_user_id(self):
        assert build_signaling_url(URL, "A") == URL + "?userId=A"

    def test_keeps_other_parameters(self):
        url = build_signaling_url("wss://relay.test/ws?token=abc&userId=B", "A")
        assert url == "wss://relay.test/ws?token=abc&userId=A"


class TestSignalingChannel:
    def test_connect_uses_role_as_user_id(self):
        channel, _, urls = make_channel()

        async def scenario():
            await channel.connect("B")
            assert channel.is_open
            assert channel.connected.is_set()
            await channel.close()

        asyncio.run(scenario())

        assert urls == [URL + "?userId=B"]
        assert not channel.is_open

    def test_messages_sent_in_order(self):
        channel, websocket, _ = make_channel()

        async def scenario():
            await channel.connect("A")
            assert channel.send(create_join("call1", "A"))
            assert channel.send(create_leave("call1", "A"))
            await channel.close()

        asyncio.run(scenario())

        assert [json.loads(text)["type"] for text in websocket.sent] == ["JOIN", "LEAVE"]
        assert json.loads(websocket.sent[0]) == {"type": "JOIN", "callId": "call1", "from": "A"}
        assert websocket.closed

    def test_send_before_connect_is_dropped(self, caplog):
        channel, websocket, _ = make_channel()

        with caplog.at_level(logging.WARNING, logger="duo_call.signaling.channel"):
            assert channel.send(create_join("call1", "A")) is False

        assert "dropping JOIN" in caplog.text
        assert websocket.sent == []

    def test_inbound_malformed_frames_dropped(self):
        channel, websocket, _ = make_channel()
        websocket.feed("not json")
        websocket.feed(json.dumps({"type": "BOGUS", "callId": "call1"}))
        websocket.feed(json.dumps({"type": "READY", "callId": "call1"}))
        websocket.feed(
            json.dumps(
                {"type": "ICE", "callId": "call1", "from": "A", "to": "B", "payload": {}}
            )
        )
        websocket.feed(json.dumps({"type": "LEAVE", "callId": "call1", "from": "A"}))
        websocket.finish()

        async def scenario():
            await channel.connect("B")
            return await collect(channel)

        messages = asyncio.run(scenario())

        assert [m.type for m in messages] == [MessageType.READY, MessageType.LEAVE]

    def test_remote_close_ends_stream_and_drops_sends(self):
        channel, websocket, _ = make_channel()
        websocket.finish()

        async def scenario():
            await channel.connect("A")
            messages = await collect(channel)
            return messages, channel.send(create_join("call1", "A"))

        messages, accepted = asyncio.run(scenario())

        assert messages == []
        assert accepted is False
        assert not channel.is_open

    def test_channel_is_single_use(self):
        channel, _, _ = make_channel()

        async def scenario():
            await channel.connect("A")
            await channel.close()
            with pytest.raises(SignalingChannelError):
                await channel.connect("A")

        asyncio.run(scenario())

    def test_connect_failure_wrapped(self):
        async def refuse(url):
            raise ConnectionRefusedError("connection refused")

        channel = SignalingChannel(URL, connector=refuse)

        async def scenario():
            with pytest.raises(SignalingChannelError):
                await channel.connect("A")
            return await collect(channel)

        assert asyncio.run(scenario()) == []
        assert not channel.is_open

    def test_close_is_idempotent(self):
        channel, websocket, _ = make_channel()

        async def scenario():
            await channel.connect("A")
            await channel.close()
            await channel.close()

        asyncio.run(scenario())

        assert websocket.closed

    def test_send_error_closes_channel(self, caplog):
        """Test a failed write closes the channel and later sends are refused."""
        channel, websocket, _ = make_channel()
        websocket.send_error = OSError("broken pipe")

        async def scenario():
            await channel.connect("A")
            with caplog.at_level(logging.ERROR, logger="duo_call.signaling.channel"):
                assert channel.send(create_join("call1", "A"))
                messages = await asyncio.wait_for(collect(channel), timeout=5)
            accepted = channel.send(create_leave("call1", "A"))
            await channel.close()
            return messages, accepted

        messages, accepted = asyncio.run(scenario())

        assert messages == []
        assert accepted is False
        assert not channel.is_open
        assert websocket.closed
        assert "Failed to send signaling message" in caplog.text
