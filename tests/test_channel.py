"""Tests for the command channel."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import settle
from tab_relay.channel import CommandChannel
from tab_relay.channel.protocol import CommandEnvelope, EventEnvelope, ResponseEnvelope
from tab_relay.errors import CallTimeoutError, ChannelClosedError, ConnectivityError

URL = "ws://127.0.0.1:18792/extension"


async def open_channel(fake_ws, **kwargs):
    channel = CommandChannel(URL, **kwargs)
    with patch("tab_relay.channel.client.connect", AsyncMock(return_value=fake_ws)):
        await channel.open()
    return channel


class TestOpen:
    """Tests for opening the channel."""

    def test_initial_state(self):
        """Test channel starts closed."""
        channel = CommandChannel(URL)

        assert not channel.is_open
        assert channel.pending_count == 0

    @pytest.mark.asyncio
    async def test_open_passes_timeout(self, fake_ws):
        """Test the handshake is bounded by connect_timeout."""
        mock_connect = AsyncMock(return_value=fake_ws)
        channel = CommandChannel(URL, connect_timeout=5.0)

        with patch("tab_relay.channel.client.connect", mock_connect):
            await channel.open()

        assert channel.is_open
        assert mock_connect.call_args.args[0] == URL
        assert mock_connect.call_args.kwargs["open_timeout"] == 5.0
        await channel.close()

    @pytest.mark.asyncio
    async def test_open_timeout_raises_connectivity_error(self):
        """Test handshake timeout is a connectivity error."""
        channel = CommandChannel(URL)

        with patch("tab_relay.channel.client.connect", AsyncMock(side_effect=asyncio.TimeoutError)):
            with pytest.raises(ConnectivityError, match="timeout"):
                await channel.open()

        assert not channel.is_open

    @pytest.mark.asyncio
    async def test_open_refused_raises_connectivity_error(self):
        """Test refused connections are connectivity errors."""
        channel = CommandChannel(URL)

        with patch("tab_relay.channel.client.connect",
                   AsyncMock(side_effect=ConnectionRefusedError("refused"))):
            with pytest.raises(ConnectivityError, match="connect failed"):
                await channel.open()


class TestInbound:
    """Tests for inbound frame handling."""

    @pytest.mark.asyncio
    async def test_command_dispatched_to_handler(self, fake_ws):
        """Test controller commands reach the handler."""
        received = []

        async def handler(command):
            received.append(command)

        channel = await open_channel(fake_ws)
        channel.on_command(handler)
        fake_ws.feed({"type": "command", "id": 1, "method": "getVersion", "params": {}})
        await settle()

        assert len(received) == 1
        assert isinstance(received[0], CommandEnvelope)
        assert received[0].method == "getVersion"
        await channel.close()

    @pytest.mark.asyncio
    async def test_malformed_frames_dropped(self, fake_ws):
        """Test bad input neither crashes nor closes the channel."""
        handler = AsyncMock()
        channel = await open_channel(fake_ws)
        channel.on_command(handler)

        fake_ws.feed("this is not json")
        fake_ws.feed("[1,2,3]")
        fake_ws.feed({"type": "mystery"})
        fake_ws.feed({"type": "command", "id": 2, "method": "getTargets"})
        await settle()

        assert channel.is_open
        handler.assert_awaited_once()
        assert fake_ws.sent == []
        await channel.close()

    @pytest.mark.asyncio
    async def test_deeply_nested_frame_dropped(self, fake_ws):
        """Test a frame too deep to parse is dropped without closing the channel."""
        closed = MagicMock()
        channel = await open_channel(fake_ws)
        channel.on_close(closed)

        fake_ws.feed("[" * 200000)
        await settle()

        assert channel.is_open
        closed.assert_not_called()
        await channel.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", [[1], {"n": 1}, True, 1.5])
    async def test_response_with_invalid_id_dropped(self, fake_ws, bad_id):
        """Test a response with a non-scalar id leaves pending calls alone."""
        channel = await open_channel(fake_ws)
        call = asyncio.create_task(channel.call("ping"))
        await settle()

        fake_ws.feed({"type": "response", "id": bad_id, "result": "x"})
        await settle()

        assert channel.is_open
        assert not call.done()
        assert channel.pending_count == 1

        fake_ws.feed({"type": "response", "id": fake_ws.sent_json[0]["id"], "result": "pong"})
        assert await call == "pong"
        await channel.close()

    @pytest.mark.asyncio
    async def test_inbound_event_ignored(self, fake_ws):
        """Test events from the controller are ignored."""
        handler = AsyncMock()
        channel = await open_channel(fake_ws)
        channel.on_command(handler)

        fake_ws.feed({"type": "event", "sessionId": "s", "method": "X"})
        await settle()

        handler.assert_not_awaited()
        assert channel.is_open
        await channel.close()


class TestOutbound:
    """Tests for send and call."""

    @pytest.mark.asyncio
    async def test_send_preserves_order(self, fake_ws):
        """Test envelopes are written in emission order."""
        channel = await open_channel(fake_ws)

        for i in range(5):
            channel.send(EventEnvelope(session_id="tab_1_1", method="E", params={"n": i}))
        await settle()

        assert [m["params"]["n"] for m in fake_ws.sent_json] == [0, 1, 2, 3, 4]
        await channel.close()

    @pytest.mark.asyncio
    async def test_send_when_closed_is_dropped(self):
        """Test sending on a closed channel is a silent no-op."""
        channel = CommandChannel(URL)

        channel.send(ResponseEnvelope(id=1, result={}))  # should not raise

    @pytest.mark.asyncio
    async def test_call_correlates_by_id(self, fake_ws):
        """Test resolving one call never resolves another."""
        channel = await open_channel(fake_ws)

        call_a = asyncio.create_task(channel.call("ping", {"n": "a"}))
        call_b = asyncio.create_task(channel.call("ping", {"n": "b"}))
        await settle()

        sent = fake_ws.sent_json
        assert [m["type"] for m in sent] == ["command", "command"]
        id_a, id_b = sent[0]["id"], sent[1]["id"]
        assert id_a != id_b

        fake_ws.feed({"type": "response", "id": id_b, "result": "B"})
        await settle()

        assert call_b.done()
        assert call_b.result() == "B"
        assert not call_a.done()

        fake_ws.feed({"type": "response", "id": id_a, "result": "A"})
        assert await call_a == "A"
        assert channel.pending_count == 0
        await channel.close()

    @pytest.mark.asyncio
    async def test_call_error_response(self, fake_ws):
        """Test error responses reject the call."""
        channel = await open_channel(fake_ws)

        call = asyncio.create_task(channel.call("ping"))
        await settle()
        fake_ws.feed({"type": "response", "id": fake_ws.sent_json[0]["id"], "error": "nope"})

        with pytest.raises(RuntimeError, match="nope"):
            await call
        await channel.close()

    @pytest.mark.asyncio
    async def test_unmatched_response_dropped(self, fake_ws):
        """Test stale response ids are ignored."""
        channel = await open_channel(fake_ws)

        fake_ws.feed({"type": "response", "id": 999, "result": {}})
        await settle()

        assert channel.is_open
        await channel.close()

    @pytest.mark.asyncio
    async def test_call_on_closed_channel(self):
        """Test calls require an open channel."""
        with pytest.raises(ChannelClosedError):
            await CommandChannel(URL).call("ping")

    @pytest.mark.asyncio
    async def test_sweep_expires_overdue_calls(self, fake_ws):
        """Test pending calls past their deadline are rejected and removed."""
        channel = await open_channel(fake_ws, sweep_interval=3600)

        call = asyncio.create_task(channel.call("ping", timeout=0.5))
        await settle()
        assert channel.pending_count == 1

        now = asyncio.get_running_loop().time()
        assert channel.sweep_expired(now) == 0
        assert channel.sweep_expired(now + 1.0) == 1

        with pytest.raises(CallTimeoutError):
            await call
        assert channel.pending_count == 0
        await channel.close()

    @pytest.mark.asyncio
    async def test_sweep_loop_runs(self, fake_ws):
        """Test the background sweep rejects expired calls on its own."""
        channel = await open_channel(fake_ws, sweep_interval=0.01)

        with pytest.raises(CallTimeoutError):
            await asyncio.wait_for(channel.call("ping", timeout=0.01), timeout=2.0)
        await channel.close()


class TestClose:
    """Tests for channel loss."""

    @pytest.mark.asyncio
    async def test_remote_close_notifies_listeners(self, fake_ws):
        """Test a clean remote close fires listeners once with 'closed'."""
        listener = MagicMock()
        channel = await open_channel(fake_ws)
        channel.on_close(listener)

        await fake_ws.close()
        await settle()

        listener.assert_called_once_with("closed")
        assert not channel.is_open

    @pytest.mark.asyncio
    async def test_abnormal_close_reason_error(self, fake_ws):
        """Test an abnormal drop is reported as 'error'."""
        listener = MagicMock()
        channel = await open_channel(fake_ws)
        channel.on_close(listener)

        fake_ws.drop()
        await settle()

        listener.assert_called_once_with("error")

    @pytest.mark.asyncio
    async def test_close_rejects_pending_calls(self, fake_ws):
        """Test pending calls do not leak across a disconnect."""
        channel = await open_channel(fake_ws)
        call = asyncio.create_task(channel.call("ping"))
        await settle()

        fake_ws.drop()

        with pytest.raises(ChannelClosedError):
            await call
        assert channel.pending_count == 0

    @pytest.mark.asyncio
    async def test_local_close(self, fake_ws):
        """Test close() closes the socket and notifies once."""
        listener = MagicMock()
        channel = await open_channel(fake_ws)
        channel.on_close(listener)

        await channel.close()
        await settle()

        assert fake_ws.closed
        listener.assert_called_once_with("closed")

    @pytest.mark.asyncio
    async def test_listener_error_does_not_propagate(self, fake_ws):
        """Test a failing close listener does not break the others."""
        good = MagicMock()
        channel = await open_channel(fake_ws)
        channel.on_close(MagicMock(side_effect=Exception("listener error")))
        channel.on_close(good)

        fake_ws.drop()
        await settle()

        good.assert_called_once_with("error")
