"""
Tunnel providers.

A provider turns a local listener into a publicly reachable URL by running
an external agent and reading the URL it prints. `ProviderKind` is the closed
set of variants; `create_provider` is the single dispatch point.
"""

import abc
import asyncio
import enum
import logging
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Dict, List, Optional, Sequence, Type

from .config import SharingConfig
from .errors import NetworkError, RateLimited, TunnelError, TunnelUnavailable

logger = logging.getLogger(__name__)

# A bare "429" also shows up in timestamps, so only match it as a status
RATE_LIMIT_PATTERN = re.compile(
    r'too many requests|rate[ -]?limit|\b(?:status|code|http/[\d.]+)\W{0,3}429\b',
    re.IGNORECASE,
)
NETWORK_MARKERS = (
    'connection refused', 'could not connect', 'failed to connect',
    'network is unreachable', 'no such host', 'dns', 'timed out',
)


class ProviderKind(str, enum.Enum):
    RELAY = 'relay'
    EDGE = 'edge'

    @classmethod
    def parse(cls, value) -> 'ProviderKind':
        if isinstance(value, cls):
            return value
        aliases = {'bore': cls.RELAY, 'cloudflare': cls.EDGE, 'cloudflared': cls.EDGE}
        text = str(value).lower()
        if text in aliases:
            return aliases[text]
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f'Unknown tunnel provider: {value!r}')


@dataclass
class TunnelHandle:
    kind: ProviderKind
    local_port: int
    public_url: Optional[str] = None
    process: Optional[asyncio.subprocess.Process] = None
    closed: bool = False
    _reader: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None


class TunnelProvider(abc.ABC):
    kind: ClassVar[ProviderKind]
    display_name: ClassVar[str]

    def __init__(self, config: SharingConfig):
        self.config = config

    @property
    @abc.abstractmethod
    def binary(self) -> str:
        """Agent executable name or path."""

    @abc.abstractmethod
    def command(self, local_port: int) -> List[str]:
        """Agent arguments for exposing `local_port`."""

    @abc.abstractmethod
    def parse_url(self, line: str) -> Optional[str]:
        """Extract the public URL from one line of agent output."""

    def _resolve_binary(self) -> Optional[str]:
        found = shutil.which(self.binary)
        if found:
            return found
        if Path(self.binary).is_file():
            return self.binary
        return None

    async def open_tunnel(self, local_port: int) -> TunnelHandle:
        """Start the agent and wait (bounded) for its public URL."""
        binary = self._resolve_binary()
        if binary is None:
            raise TunnelUnavailable(
                f'{self.display_name} agent not installed ({self.binary} not found)'
            )

        logger.info(f'Starting {self.display_name} tunnel for port {local_port}...')
        try:
            process = await asyncio.create_subprocess_exec(
                binary, *self.command(local_port),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise TunnelUnavailable(f'Failed to start {self.display_name}: {e}')

        logger.info(f'{self.display_name} started with PID: {process.pid}')
        handle = TunnelHandle(kind=self.kind, local_port=local_port, process=process)
        url_future = asyncio.get_running_loop().create_future()
        handle._reader = asyncio.create_task(self._watch_output(handle, url_future))

        try:
            handle.public_url = await asyncio.wait_for(url_future, self.config.tunnel_timeout)
        except asyncio.TimeoutError:
            await self.close_tunnel(handle)
            raise TunnelUnavailable(
                f'Timed out after {self.config.tunnel_timeout:g}s waiting for a '
                f'{self.display_name} public URL'
            )
        except BaseException:
            await self.close_tunnel(handle)
            raise

        logger.info(f'{self.display_name} public URL: {handle.public_url}')
        return handle

    async def _watch_output(self, handle: TunnelHandle, url_future: asyncio.Future):
        """Read agent output for the lifetime of the process."""
        last_error: Optional[TunnelError] = None
        stream = handle.process.stdout
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode(errors='replace').strip()
            logger.debug(f'[{self.display_name}] {line}')
            if url_future.done():
                continue

            url = self.parse_url(line)
            if url:
                url_future.set_result(url)
                continue

            lowered = line.lower()
            if RATE_LIMIT_PATTERN.search(line):
                url_future.set_exception(RateLimited(f'{self.display_name} rate limited: {line}'))
            elif any(marker in lowered for marker in NETWORK_MARKERS):
                last_error = NetworkError(f'{self.display_name} network error: {line}')
                logger.warning(f'[{self.display_name}] {line}')
            elif 'error' in lowered or 'failed' in lowered:
                logger.warning(f'[{self.display_name}] {line}')

        returncode = await handle.process.wait()
        if not url_future.done():
            url_future.set_exception(last_error or TunnelUnavailable(
                f'{self.display_name} exited with code {returncode} before publishing a URL'
            ))
        elif not handle.closed:
            # No failover: the session keeps its provider, the URL just stops working
            logger.warning(f'{self.display_name} tunnel for port {handle.local_port} exited')

    async def close_tunnel(self, handle: Optional[TunnelHandle]) -> None:
        """Stop the agent. Safe to call on a handle that never opened."""
        if handle is None or handle.closed:
            return
        handle.closed = True
        process = handle.process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), 5)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()
            except ProcessLookupError:
                pass
        if handle._reader is not None and not handle._reader.done():
            handle._reader.cancel()
            try:
                await handle._reader
            except asyncio.CancelledError:
                pass
        logger.info(f'{self.display_name} tunnel for port {handle.local_port} closed')


async def check_relay_server(host: str, port: int, timeout: float) -> Optional[float]:
    """Connect to a relay's control port; returns the latency or None."""
    start = time.monotonic()
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except asyncio.TimeoutError:
        logger.warning(f'Relay {host}:{port} timed out after {timeout:g}s')
        return None
    except OSError as e:
        logger.warning(f'Relay {host}:{port} unreachable: {e}')
        return None
    latency = time.monotonic() - start
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    logger.info(f'Relay {host} is reachable ({latency * 1000:.0f}ms)')
    return latency


async def find_available_relay(servers: Sequence[str], port: int, timeout: float,
                               attempts: int = 2, retry_delay: float = 0.5) -> Optional[str]:
    """First reachable relay in priority order, or None."""
    for server in servers:
        for attempt in range(1, attempts + 1):
            if await check_relay_server(server, port, timeout) is not None:
                return server
            if attempt < attempts:
                await asyncio.sleep(retry_delay)
        logger.warning(f'Relay {server} failed after {attempts} attempt(s)')
    return None


class RelayTunnel(TunnelProvider):
    """Raw TCP relay (bore): public URL is http://<relay>:<port>."""

    kind = ProviderKind.RELAY
    display_name = 'Bore'
    LISTENING_PATTERN = re.compile(r'listening at ([a-zA-Z0-9.-]+:\d+)')

    def __init__(self, config: SharingConfig):
        super().__init__(config)
        self.server = config.relay_server

    @property
    def binary(self) -> str:
        return self.config.relay_binary

    async def open_tunnel(self, local_port: int) -> TunnelHandle:
        servers = self.config.relay_servers
        if servers:
            server = await find_available_relay(
                servers, self.config.relay_control_port,
                self.config.relay_check_timeout, self.config.relay_check_attempts,
            )
            if server is None:
                raise NetworkError(f'No relay server reachable (tried {", ".join(servers)})')
            self.server = server
        return await super().open_tunnel(local_port)

    def command(self, local_port: int) -> List[str]:
        return ['local', str(local_port), '--to', self.server]

    def parse_url(self, line: str) -> Optional[str]:
        match = self.LISTENING_PATTERN.search(line)
        if match:
            return f'http://{match.group(1)}'
        match = re.search(re.escape(self.server) + r':\d+', line)
        if match:
            return f'http://{match.group(0)}'
        return None


class EdgeTunnel(TunnelProvider):
    """Edge network quick tunnel (cloudflared): HTTPS URL on trycloudflare.com."""

    kind = ProviderKind.EDGE
    display_name = 'Cloudflare'
    URL_PATTERN = re.compile(r'https://[a-zA-Z0-9-]+\.trycloudflare\.com')

    @property
    def binary(self) -> str:
        return self.config.edge_binary

    def command(self, local_port: int) -> List[str]:
        return ['tunnel', '--url', f'http://localhost:{local_port}']

    def parse_url(self, line: str) -> Optional[str]:
        match = self.URL_PATTERN.search(line)
        return match.group(0) if match else None


PROVIDERS: Dict[ProviderKind, Type[TunnelProvider]] = {
    ProviderKind.RELAY: RelayTunnel,
    ProviderKind.EDGE: EdgeTunnel,
}


def create_provider(kind, config: SharingConfig) -> TunnelProvider:
    return PROVIDERS[ProviderKind.parse(kind)](config)
