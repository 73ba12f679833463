"""
Tests for tunnel providers, driven by stand-in agent scripts.
"""

import asyncio
import dataclasses
import stat
import sys

import pytest

from packshare.errors import NetworkError, RateLimited, TunnelUnavailable
from packshare.tunnel import (
    EdgeTunnel, ProviderKind, RelayTunnel, check_relay_server, create_provider, find_available_relay,
)

unix_only = pytest.mark.skipif(sys.platform == 'win32', reason='uses shell scripts as agents')


def fake_agent(tmp_path, body: str) -> str:
    script = tmp_path / 'agent.sh'
    script.write_text('#!/bin/sh\n' + body + '\n')
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return str(script)


def relay(config, binary: str, **overrides) -> RelayTunnel:
    return RelayTunnel(dataclasses.replace(config, relay_binary=binary, **overrides))


@unix_only
class TestOpenTunnel:
    """Tests for starting agents and reading their public URL."""

    async def test_relay_url_from_output(self, tmp_path, config):
        binary = fake_agent(tmp_path, 'echo "INFO starting"\necho "INFO listening at bore.pub:12345"\nexec sleep 30')
        provider = relay(config, binary)

        handle = await provider.open_tunnel(8080)
        try:
            assert handle.public_url == 'http://bore.pub:12345'
            assert handle.kind == ProviderKind.RELAY
            assert handle.local_port == 8080
            assert handle.pid is not None
        finally:
            await provider.close_tunnel(handle)

        assert handle.closed
        assert handle.process.returncode is not None

    async def test_close_twice(self, tmp_path, config):
        binary = fake_agent(tmp_path, 'echo "listening at bore.pub:2000"\nexec sleep 30')
        provider = relay(config, binary)
        handle = await provider.open_tunnel(8080)
        await provider.close_tunnel(handle)
        await provider.close_tunnel(handle)

    async def test_missing_agent(self, tmp_path, config):
        provider = relay(config, str(tmp_path / 'no-such-agent'))
        with pytest.raises(TunnelUnavailable, match='not installed'):
            await provider.open_tunnel(8080)

    async def test_rate_limited(self, tmp_path, config):
        binary = fake_agent(tmp_path, 'echo "ERROR 429 Too Many Requests"\nexec sleep 30')
        with pytest.raises(RateLimited):
            await relay(config, binary).open_tunnel(8080)

    async def test_timestamps_are_not_rate_limits(self, tmp_path, config):
        binary = fake_agent(tmp_path, (
            'echo "2024-04-11T17:08:42.429391Z  INFO bore_cli::client: connected to server"\n'
            'echo "2024-04-11T17:08:42.542900Z  INFO bore_cli::client: listening at bore.pub:12345"\n'
            'exec sleep 30'
        ))
        provider = relay(config, binary)

        handle = await provider.open_tunnel(8080)
        try:
            assert handle.public_url == 'http://bore.pub:12345'
        finally:
            await provider.close_tunnel(handle)

    async def test_rate_limited_status_line(self, tmp_path, config):
        binary = fake_agent(tmp_path, 'echo "2024-04-11T17:08:42.429391Z ERROR server replied with status: 429"\nexec sleep 30')
        with pytest.raises(RateLimited):
            await relay(config, binary).open_tunnel(8080)

    async def test_network_error_before_url(self, tmp_path, config):
        binary = fake_agent(tmp_path, 'echo "ERROR could not connect to server: connection refused"\nexit 1')
        with pytest.raises(NetworkError):
            await relay(config, binary).open_tunnel(8080)

    async def test_agent_exits_without_url(self, tmp_path, config):
        binary = fake_agent(tmp_path, 'echo "something else"\nexit 3')
        with pytest.raises(TunnelUnavailable, match='exited with code 3'):
            await relay(config, binary).open_tunnel(8080)

    async def test_timeout_waiting_for_url(self, tmp_path, config):
        binary = fake_agent(tmp_path, 'exec sleep 30')
        provider = relay(config, binary, tunnel_timeout=0.3)
        with pytest.raises(TunnelUnavailable, match='Timed out'):
            await provider.open_tunnel(8080)


class TestProviders:
    async def test_close_none_is_safe(self, config):
        await RelayTunnel(config).close_tunnel(None)

    def test_relay_command(self, config):
        assert RelayTunnel(config).command(5000) == ['local', '5000', '--to', 'bore.pub']

    def test_relay_parse_bare_address(self, config):
        assert RelayTunnel(config).parse_url('remote_port=41234 bore.pub:41234') == 'http://bore.pub:41234'
        assert RelayTunnel(config).parse_url('connected to server') is None

    def test_edge_command_and_url(self, config):
        provider = EdgeTunnel(config)
        assert provider.command(5000) == ['tunnel', '--url', 'http://localhost:5000']
        line = '2024-05-01T12:00:00Z INF |  https://quiet-river-1234.trycloudflare.com  |'
        assert provider.parse_url(line) == 'https://quiet-river-1234.trycloudflare.com'
        assert provider.parse_url('INF Requesting new quick Tunnel') is None

    @pytest.mark.parametrize('value, kind', [
        ('relay', ProviderKind.RELAY),
        ('bore', ProviderKind.RELAY),
        ('edge', ProviderKind.EDGE),
        ('Cloudflare', ProviderKind.EDGE),
        (ProviderKind.EDGE, ProviderKind.EDGE),
    ])
    def test_parse_kind(self, value, kind):
        assert ProviderKind.parse(value) is kind

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            ProviderKind.parse('ngrok')

    def test_create_provider(self, config):
        assert isinstance(create_provider('relay', config), RelayTunnel)
        assert isinstance(create_provider(ProviderKind.EDGE, config), EdgeTunnel)


@pytest.fixture
async def control_port():
    """A listening port standing in for a relay's control port."""
    async def accept(reader, writer):
        writer.close()

    server = await asyncio.start_server(accept, '127.0.0.1', 0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()


@pytest.fixture
async def closed_port():
    server = await asyncio.start_server(lambda r, w: None, '127.0.0.1', 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
    return port


class TestRelaySelection:
    """Tests for picking a reachable relay before starting the agent."""

    async def test_reachable_server(self, control_port):
        assert await check_relay_server('127.0.0.1', control_port, 2) is not None

    async def test_unreachable_server(self, closed_port):
        assert await check_relay_server('127.0.0.1', closed_port, 2) is None

    async def test_first_reachable_wins(self, control_port):
        found = await find_available_relay(['127.0.0.1', 'localhost'], control_port, 2)
        assert found == '127.0.0.1'

    async def test_none_reachable(self, closed_port):
        found = await find_available_relay(['127.0.0.1'], closed_port, 2, attempts=2, retry_delay=0)
        assert found is None

    @unix_only
    async def test_agent_uses_selected_server(self, tmp_path, config, control_port):
        # Arguments are: local <port> --to <server>
        binary = fake_agent(tmp_path, 'echo "listening at $4:4000"\nexec sleep 30')
        provider = relay(config, binary, relay_servers=('127.0.0.1',), relay_control_port=control_port)

        handle = await provider.open_tunnel(8080)
        try:
            assert provider.server == '127.0.0.1'
            assert provider.command(8080)[-1] == '127.0.0.1'
            assert handle.public_url == 'http://127.0.0.1:4000'
        finally:
            await provider.close_tunnel(handle)

    async def test_no_server_reachable(self, tmp_path, config, closed_port):
        provider = relay(config, 'bore', relay_servers=('127.0.0.1',),
                         relay_control_port=closed_port, relay_check_attempts=1)
        with pytest.raises(NetworkError, match='No relay server reachable'):
            await provider.open_tunnel(8080)
