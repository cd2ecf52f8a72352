import asyncio
import json
import socket

import pytest
from websockets.asyncio.server import serve

from betbot.gateway import (
    EncodingError, GatewayClient, GatewayConnectionError, TransportError,
    build_agent_request, decode_agent_frame,
)
from betbot.models import GatewaySettings
from conftest import wait_until


class AgentStub:
    """Local gateway: records inbound frames and pushes scripted frames on connect."""

    def __init__(self, push=()):
        self.push = list(push)
        self.auth_headers = []
        self.inbox = []
        self.open_connections = 0
        self.total_connections = 0
        self.close_after_push = False

    async def handler(self, ws):
        self.auth_headers.append(ws.request.headers.get("Authorization"))
        self.open_connections += 1
        self.total_connections += 1
        try:
            for frame in self.push:
                await ws.send(frame)
            if self.close_after_push:
                await ws.close()
                return
            async for message in ws:
                self.inbox.append(json.loads(message))
        finally:
            self.open_connections -= 1


async def start_stub(stub):
    server = await serve(stub.handler, "127.0.0.1", 0)
    port = next(iter(server.sockets)).getsockname()[1]
    return server, GatewaySettings(host="127.0.0.1", port=port, token="secret")


def free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


# ---------- framing ----------
def test_build_agent_request_omits_media_without_image():
    assert build_agent_request("hi", "main") == {
        "method": "agent.send", "params": {"agentId": "main", "message": "hi"}}
    req = build_agent_request("look", "main", "QUJD")
    assert req["params"]["media"] == [{"type": "image/jpeg", "data": "QUJD"}]


def test_decode_agent_frame():
    assert decode_agent_frame('{"method": "agent.response", "params": {"text": "hi"}}') == ("hi", False)
    assert decode_agent_frame(b'{"method": "agent.response", "params": {"text": "x", "done": true}}') == ("x", True)
    assert decode_agent_frame('{"method": "agent.status", "params": {"text": "hi"}}') is None
    assert decode_agent_frame('{"params": {"text": "hi"}}') is None
    assert decode_agent_frame("not json") is None
    assert decode_agent_frame('["agent.response"]') is None
    assert decode_agent_frame(b"\xff\xfe") is None


def test_decode_agent_frame_requires_boolean_done():
    frame = '{"method": "agent.response", "params": {"text": "x", "done": %s}}'
    assert decode_agent_frame(frame % "false") == ("x", False)
    assert decode_agent_frame(frame % '"true"') is None
    assert decode_agent_frame(frame % "1") is None
    assert decode_agent_frame(frame % "null") is None


# ---------- connect ----------
@pytest.mark.asyncio
async def test_connect_sends_bearer_token_and_requests():
    stub = AgentStub()
    server, settings = await start_stub(stub)
    client = GatewayClient(settings, agent_id="main")
    try:
        await client.connect()
        assert client.is_connected
        await client.send_message("hello")
        await client.send_message("frame", image_base64="QUJD")
        await wait_until(lambda: len(stub.inbox) == 2)
    finally:
        await client.disconnect()
        server.close()
        await server.wait_closed()

    assert stub.auth_headers == ["Bearer secret"]
    assert stub.inbox[0] == {"method": "agent.send", "params": {"agentId": "main", "message": "hello"}}
    assert stub.inbox[1]["params"]["media"] == [{"type": "image/jpeg", "data": "QUJD"}]


@pytest.mark.asyncio
async def test_malformed_endpoint_raises_connection_error():
    client = GatewayClient(GatewaySettings(host="bad host", port=18789, token=""))
    with pytest.raises(ConnectionError):
        await client.connect()
    assert not client.is_connected
    assert client.last_error == "Invalid gateway URL"


@pytest.mark.asyncio
async def test_refused_connection_raises_connection_error():
    client = GatewayClient(GatewaySettings(host="127.0.0.1", port=free_port(), token=""))
    with pytest.raises(GatewayConnectionError):
        await client.connect()
    assert not client.is_connected
    assert client.last_error


# ---------- receive loop ----------
@pytest.mark.asyncio
async def test_receive_loop_dispatches_only_agent_responses():
    stub = AgentStub(push=[
        "garbage{",
        json.dumps({"method": "agent.typing"}),
        json.dumps({"method": "agent.response", "params": {"text": "Hel"}}),
        json.dumps({"method": "agent.response", "params": {}}),
        json.dumps({"method": "agent.response", "params": {"text": "lo", "done": True}}).encode(),
    ])
    server, settings = await start_stub(stub)
    client = GatewayClient(settings)
    received = []

    async def on_message(text, done):
        received.append((text, done))

    client.on_message = on_message
    try:
        await client.connect()
        await wait_until(lambda: len(received) == 2)
        assert client.is_connected
        assert client.last_error is None
    finally:
        await client.disconnect()
        server.close()
        await server.wait_closed()
    assert received == [("Hel", False), ("lo", True)]


@pytest.mark.asyncio
async def test_handler_error_does_not_stop_loop():
    stub = AgentStub(push=[
        json.dumps({"method": "agent.response", "params": {"text": "boom", "done": True}}),
        json.dumps({"method": "agent.response", "params": {"text": "ok", "done": True}}),
    ])
    server, settings = await start_stub(stub)
    client = GatewayClient(settings)
    received = []

    def on_message(text, done):
        if text == "boom":
            raise RuntimeError("handler bug")
        received.append(text)

    client.on_message = on_message
    try:
        await client.connect()
        await wait_until(lambda: received == ["ok"])
    finally:
        await client.disconnect()
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_remote_close_clears_connected_and_records_error():
    stub = AgentStub()
    stub.close_after_push = True
    server, settings = await start_stub(stub)
    client = GatewayClient(settings)
    closed = []
    client.on_closed = lambda: closed.append(client.last_error)
    try:
        await client.connect()
        await wait_until(lambda: not client.is_connected)
        assert client.last_error
        assert closed == [client.last_error]
        with pytest.raises(TransportError):
            await client.send_message("anyone there?")
    finally:
        await client.disconnect()
        server.close()
        await server.wait_closed()


# ---------- send ----------
@pytest.mark.asyncio
async def test_send_without_connection_is_transport_error():
    client = GatewayClient(GatewaySettings(host="127.0.0.1", port=1, token=""))
    with pytest.raises(TransportError):
        await client.send_message("hi")
    assert client.last_error == "Not connected"


@pytest.mark.asyncio
async def test_unserializable_params_is_encoding_error():
    stub = AgentStub()
    server, settings = await start_stub(stub)
    client = GatewayClient(settings)
    try:
        await client.connect()
        with pytest.raises(EncodingError):
            await client.send("agent.send", {"agentId": "main", "message": object()})
        assert client.is_connected
        await client.send_message("still works")
        await wait_until(lambda: len(stub.inbox) == 1)
    finally:
        await client.disconnect()
        server.close()
        await server.wait_closed()


# ---------- disconnect / settings ----------
@pytest.mark.asyncio
async def test_disconnect_is_idempotent():
    stub = AgentStub()
    server, settings = await start_stub(stub)
    client = GatewayClient(settings)
    try:
        await client.connect()
        await client.disconnect()
        once = (client.is_connected, client.last_error, client._ws, client._receive_task)
        await client.disconnect()
        twice = (client.is_connected, client.last_error, client._ws, client._receive_task)
        assert once == twice == (False, None, None, None)
        await wait_until(lambda: stub.open_connections == 0)
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_update_settings_reconnects_exactly_once():
    old_stub, new_stub = AgentStub(), AgentStub()
    old_server, old_settings = await start_stub(old_stub)
    new_server, new_settings = await start_stub(new_stub)
    client = GatewayClient(old_settings)
    calls = []
    connect, disconnect = client.connect, client.disconnect

    async def counting_connect(settings=None):
        calls.append("connect")
        await connect(settings)

    async def counting_disconnect():
        calls.append("disconnect")
        await disconnect()

    try:
        await client.connect()
        client.connect, client.disconnect = counting_connect, counting_disconnect
        await client.update_settings(new_settings)

        assert calls == ["disconnect", "connect"]
        assert client.is_connected
        await wait_until(lambda: old_stub.open_connections == 0)
        await wait_until(lambda: new_stub.total_connections == 1)
        await asyncio.sleep(0.05)
        assert new_stub.total_connections == 1
        assert new_stub.open_connections == 1
        assert old_stub.total_connections == 1
    finally:
        await disconnect()
        for server in (old_server, new_server):
            server.close()
            await server.wait_closed()


@pytest.mark.asyncio
async def test_update_settings_while_disconnected_only_stores():
    client = GatewayClient(GatewaySettings(host="127.0.0.1", port=1, token=""))
    new = GatewaySettings(host="127.0.0.1", port=2, token="x")
    await client.update_settings(new)
    assert client.settings == new
    assert not client.is_connected
