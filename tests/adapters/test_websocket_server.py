import asyncio
import base64
import json

import pytest
import pytest_asyncio
import websockets

from adapters.live_upstream import LiveUpstreamSession
from adapters.websocket_server import ProxyServer
from domain.state import SessionState
from tests.conftest import wait_until

START = json.dumps({"input": {"event": "start", "language": "en"}})
INTERRUPT = json.dumps({"control": {"event": "interrupt"}})


def make_server(provider, instructions_path) -> ProxyServer:
    def create_upstream() -> LiveUpstreamSession:
        return LiveUpstreamSession(
            api_key="test-key",
            model="models/test-live",
            instructions_path=instructions_path,
            url=provider.url,
        )

    return ProxyServer(upstream_factory=create_upstream, host="127.0.0.1", port=0, path="/ws")


@pytest_asyncio.fixture
async def proxy_server(provider, instructions_file):
    server = make_server(provider, instructions_file)
    await server.start()
    yield server
    await server.stop()


def client_url(server: ProxyServer, path: str = "/ws") -> str:
    return f"ws://127.0.0.1:{server.port}{path}"


async def receive_until_closed(ws) -> list:
    messages = []
    try:
        async for message in ws:
            messages.append(message)
    except websockets.ConnectionClosed:
        pass
    return messages


class TestProxyServer:
    @pytest.mark.asyncio
    async def test_full_duplex_relay(self, proxy_server, provider):
        async with websockets.connect(client_url(proxy_server)) as ws:
            await ws.send(START)
            await wait_until(lambda: len(provider.received) == 2)

            assert json.loads(provider.received[0])["setup"]["model"] == "models/test-live"
            assert provider.received[1] == START

            chunk = json.dumps({"audioChunk": base64.b64encode(b"\x01\x00\x02\x00").decode()})
            await provider.send(chunk)
            assert await asyncio.wait_for(ws.recv(), timeout=2.0) == chunk

            (session,) = proxy_server.sessions.values()
            assert session.speaking
            assert session.state == SessionState.SPEAKING

            await ws.send(INTERRUPT)
            await wait_until(lambda: len(provider.received) == 3)
            assert provider.received[2] == INTERRUPT
            assert not session.speaking

    @pytest.mark.asyncio
    async def test_binary_frames_relayed_both_ways(self, proxy_server, provider):
        async with websockets.connect(client_url(proxy_server)) as ws:
            await ws.send(START)
            await wait_until(lambda: len(provider.received) == 2)

            await ws.send(b"\x00\x01\x02\x03")
            await wait_until(lambda: len(provider.received) == 3)
            assert provider.received[2] == b"\x00\x01\x02\x03"

            await provider.send(b"\x04\x00")
            assert await asyncio.wait_for(ws.recv(), timeout=2.0) == b"\x04\x00"

    @pytest.mark.asyncio
    async def test_unknown_path_is_rejected(self, proxy_server):
        with pytest.raises(websockets.InvalidStatus):
            await websockets.connect(client_url(proxy_server, "/other"))

    @pytest.mark.asyncio
    async def test_provider_failure_reaches_client(self, proxy_server, provider):
        async with websockets.connect(client_url(proxy_server)) as ws:
            await ws.send(START)
            await wait_until(lambda: provider.connections)

            await provider.drop_connections(code=1011)
            messages = await asyncio.wait_for(receive_until_closed(ws), timeout=2.0)

        errors = [json.loads(m)["error"] for m in messages]
        assert len(errors) == 1
        assert errors[0].startswith("Upstream connection error")
        assert ws.close_code == 1011
        await wait_until(lambda: not proxy_server.sessions)

    @pytest.mark.asyncio
    async def test_setup_failure_reaches_client(self, provider, tmp_path):
        server = make_server(provider, tmp_path / "missing.txt")
        await server.start()
        try:
            async with websockets.connect(client_url(server)) as ws:
                await ws.send(START)
                messages = await asyncio.wait_for(receive_until_closed(ws), timeout=2.0)
        finally:
            await server.stop()

        assert "system instructions" in json.loads(messages[0])["error"]
        assert provider.connections == []

    @pytest.mark.asyncio
    async def test_undecodable_instructions_reach_client(self, provider, tmp_path):
        instructions = tmp_path / "system.txt"
        instructions.write_bytes(b"\xff\xfe\xfa not utf8")
        server = make_server(provider, instructions)
        await server.start()
        try:
            async with websockets.connect(client_url(server)) as ws:
                await ws.send(START)
                messages = await asyncio.wait_for(receive_until_closed(ws), timeout=2.0)
                close_code = ws.close_code
        finally:
            await server.stop()

        assert "system instructions" in json.loads(messages[0])["error"]
        assert close_code == 1011
        assert provider.connections == []

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, proxy_server, provider):
        async with websockets.connect(client_url(proxy_server)) as first, \
                websockets.connect(client_url(proxy_server)) as second:
            await first.send(START)
            await wait_until(lambda: len(provider.connections) == 1)
            await second.send(START)
            await wait_until(lambda: len(provider.connections) == 2)
            assert len(proxy_server.sessions) == 2

            await provider.connections[0].send('{"responseText": "only for the first"}')

            assert await asyncio.wait_for(first.recv(), timeout=2.0) == '{"responseText": "only for the first"}'
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(second.recv(), timeout=0.2)

    @pytest.mark.asyncio
    async def test_client_disconnect_closes_upstream(self, proxy_server, provider):
        async with websockets.connect(client_url(proxy_server)) as ws:
            await ws.send(START)
            await wait_until(lambda: provider.connections)

        await wait_until(lambda: not proxy_server.sessions)
        await wait_until(lambda: provider.connections[0].close_code is not None)

    @pytest.mark.asyncio
    async def test_stop_closes_open_sessions(self, provider, instructions_file):
        server = make_server(provider, instructions_file)
        await server.start()
        ws = await websockets.connect(client_url(server))
        await ws.send(START)
        await wait_until(lambda: provider.connections)

        await server.stop()

        await asyncio.wait_for(receive_until_closed(ws), timeout=2.0)
        assert ws.close_code == 1001
