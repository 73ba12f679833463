"""
Seeding: serve a built package over HTTP behind a public tunnel.

Each export gets its own `PackageServer` bound to an ephemeral local port
and one tunnel. `SeedSessionManager` owns every session, the per-session
counters and the on-disk registry used to clean up after a crash.
"""

import asyncio
import enum
import json
import logging
import os
import signal
import time
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

import aiofiles
import aiofiles.os

from .config import SharingConfig
from .errors import AlreadySeeding, SharingError, SourceUnavailable, translate_os_error
from .manifest import PreparedExport
from .progress import ProgressChannel, Stage
from .protocol import (
    CHECKSUM_HEADER, DOWNLOAD_ROUTES, MANIFEST_ROUTE, calculate_file_hash,
    generate_access_token, validate_token,
)
from .tunnel import ProviderKind, TunnelHandle, TunnelProvider, create_provider

logger = logging.getLogger(__name__)

MAX_REQUEST_HEAD = 16384  # Max request head 16KB
UPLOAD_FLUSH_BYTES = 256 * 1024
REGISTRY_FILE = 'seeds.json'

STATUS_TEXT = {
    200: 'OK', 206: 'Partial Content', 400: 'Bad Request', 403: 'Forbidden',
    404: 'Not Found', 405: 'Method Not Allowed', 416: 'Range Not Satisfiable',
    503: 'Service Unavailable',
}


class SeedState(str, enum.Enum):
    STARTING = 'starting'
    LISTENING = 'listening'
    PUBLISHED = 'published'
    STOPPING = 'stopping'
    STOPPED = 'stopped'
    FAILED = 'failed'


@dataclass
class SeedSession:
    """An actively hosted export."""
    export_id: str
    instance_name: str
    package_path: Path
    file_size: int
    provider: ProviderKind
    started_at: str
    local_port: Optional[int] = None
    public_url: Optional[str] = None
    download_count: int = 0
    uploaded_bytes: int = 0
    state: SeedState = SeedState.STARTING

    def to_dict(self) -> dict:
        """Share record as exposed by the backend command surface."""
        return {
            'share_id': self.export_id,
            'instance_name': self.instance_name,
            'package_path': str(self.package_path),
            'local_port': self.local_port,
            'public_url': self.public_url,
            'download_count': self.download_count,
            'uploaded_bytes': self.uploaded_bytes,
            'started_at': self.started_at,
            'file_size': self.file_size,
            'provider': self.provider.value,
        }


def parse_range(header: Optional[str], file_size: int) -> Optional[Tuple[int, int]]:
    """Parse a single `bytes=start-end` range into inclusive offsets.

    Returns None for a whole-file request and raises ValueError for a range
    that cannot be satisfied.
    """
    if not header or not header.startswith('bytes='):
        return None
    first = header[len('bytes='):].split(',')[0].strip()
    start_text, _, end_text = first.partition('-')
    if not start_text:
        # Suffix range: last N bytes
        length = int(end_text)
        if length <= 0:
            raise ValueError(header)
        return max(0, file_size - length), file_size - 1
    start = int(start_text)
    end = int(end_text) if end_text else file_size - 1
    end = min(end, file_size - 1)
    if start > end or start >= file_size:
        raise ValueError(header)
    return start, end


class PackageServer:
    """HTTP server for one seeded package."""

    def __init__(self, seed: '_Seed', manager: 'SeedSessionManager'):
        self.seed = seed
        self.manager = manager
        self.config = manager.config
        self._server: Optional[asyncio.AbstractServer] = None
        self._transfers: Set[asyncio.Task] = set()

    @property
    def active_connections(self) -> int:
        return len(self._transfers)

    async def start(self, port: int = 0) -> int:
        """Bind the listener and return the port it got."""
        self._server = await asyncio.start_server(
            self._handle_connection, self.config.bind_host, port
        )
        bound = self._server.sockets[0].getsockname()[1]
        logger.info(f'Share {self.seed.session.export_id} listening on port {bound}')
        return bound

    async def stop(self):
        """Stop accepting peers and cut every in-flight transfer."""
        if self._server is None:
            return
        self._server.close()
        transfers = list(self._transfers)
        for task in transfers:
            task.cancel()
        if transfers:
            await asyncio.gather(*transfers, return_exceptions=True)
        await self._server.wait_closed()
        self._server = None

    async def _handle_connection(self, reader: StreamReader, writer: StreamWriter):
        peer_address = writer.get_extra_info('peername')
        if self.active_connections >= self.config.max_connections:
            logger.warning(f'Connection limit reached, rejecting {peer_address}')
            try:
                await self._send_response(writer, 503, 'Too many connections')
            except ConnectionError as e:
                logger.debug(f'Peer {peer_address} went away: {e}')
            finally:
                await _close_writer(writer)
            return

        task = asyncio.current_task()
        self._transfers.add(task)
        logger.debug(f'Connection from {peer_address} (active: {self.active_connections})')
        try:
            await asyncio.wait_for(self._handle_request(reader, writer), self.config.request_timeout)
        except asyncio.TimeoutError:
            logger.warning(f'Request timeout from {peer_address}')
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f'Peer {peer_address} went away: {e}')
        except Exception as e:
            logger.error(f'Error handling connection from {peer_address}: {e}')
        finally:
            self._transfers.discard(task)
            await _close_writer(writer)

    async def _handle_request(self, reader: StreamReader, writer: StreamWriter):
        try:
            head = await reader.readuntil(b'\r\n\r\n')
        except asyncio.LimitOverrunError:
            await self._send_response(writer, 400, 'Request too large')
            return
        if len(head) > MAX_REQUEST_HEAD:
            await self._send_response(writer, 400, 'Request too large')
            return

        lines = head.decode('latin-1').split('\r\n')
        parts = lines[0].split()
        if len(parts) < 2:
            await self._send_response(writer, 400, 'Bad Request')
            return
        method, target = parts[0].upper(), parts[1].split('?', 1)[0]
        headers = {}
        for line in lines[1:]:
            name, sep, value = line.partition(':')
            if sep:
                headers[name.strip().lower()] = value.strip()

        # Expected formats: /{token}, /{token}/download, /{token}/manifest
        token, _, rest = target.lstrip('/').partition('/')
        if not validate_token(token, self.seed.token):
            logger.warning('Invalid access token attempted')
            await asyncio.sleep(0.1)
            await self._send_response(writer, 403, 'Invalid or missing access token')
            return
        path = '/' + rest

        if method not in ('GET', 'HEAD'):
            await self._send_response(writer, 405, 'Method Not Allowed')
        elif path == MANIFEST_ROUTE and method == 'GET':
            await self._serve_manifest(writer)
        elif path in DOWNLOAD_ROUTES:
            await self._serve_package(writer, headers.get('range'), head_only=method == 'HEAD')
        else:
            await self._send_response(writer, 404, 'Not Found')

    async def _send_response(self, writer: StreamWriter, status: int, body: str):
        payload = body.encode()
        writer.write(
            f'HTTP/1.1 {status} {STATUS_TEXT.get(status, "Error")}\r\n'
            f'Content-Type: text/plain\r\n'
            f'Content-Length: {len(payload)}\r\n'
            f'Connection: close\r\n\r\n'.encode() + payload
        )
        await writer.drain()

    async def _serve_manifest(self, writer: StreamWriter):
        payload = self.seed.manifest_json.encode()
        writer.write(
            'HTTP/1.1 200 OK\r\n'
            'Content-Type: application/json\r\n'
            f'Content-Length: {len(payload)}\r\n'
            'Access-Control-Allow-Origin: *\r\n'
            'Connection: close\r\n\r\n'.encode() + payload
        )
        await writer.drain()

    async def _serve_package(self, writer: StreamWriter, range_header: Optional[str], head_only: bool):
        session = self.seed.session
        file_size = session.file_size
        try:
            byte_range = parse_range(range_header, file_size)
        except ValueError:
            await self._send_response(writer, 416, f'Invalid range: {range_header}')
            return

        start, end = byte_range if byte_range else (0, file_size - 1)
        length = end - start + 1 if file_size else 0
        status = 206 if byte_range else 200
        headers = [
            f'HTTP/1.1 {status} {STATUS_TEXT[status]}',
            'Content-Type: application/zip',
            f'Content-Length: {length}',
            f'Content-Disposition: attachment; filename="{session.package_path.name}"',
            f'{CHECKSUM_HEADER}: {self.seed.checksum}',
            'Accept-Ranges: bytes',
            'Connection: close',
        ]
        if byte_range:
            headers.append(f'Content-Range: bytes {start}-{end}/{file_size}')
        writer.write(('\r\n'.join(headers) + '\r\n\r\n').encode())
        await writer.drain()
        if head_only:
            return

        sent = 0
        unflushed = 0
        export_id = session.export_id
        try:
            async with aiofiles.open(session.package_path, 'rb') as f:
                await f.seek(start)
                remaining = length
                while remaining > 0:
                    chunk = await f.read(min(self.config.chunk_size, remaining))
                    if not chunk:
                        break
                    writer.write(chunk)
                    await writer.drain()
                    remaining -= len(chunk)
                    sent += len(chunk)
                    unflushed += len(chunk)
                    if unflushed >= UPLOAD_FLUSH_BYTES:
                        await self.manager.record_upload(export_id, unflushed)
                        unflushed = 0
        finally:
            complete = start == 0 and sent >= file_size
            if complete:
                await self.manager.record_download(export_id, unflushed)
            elif unflushed:
                await self.manager.record_upload(export_id, unflushed)


@dataclass
class _Seed:
    """Runtime state behind a SeedSession."""
    session: SeedSession
    token: str
    manifest_json: str
    checksum: str = ''
    server: Optional[PackageServer] = None
    provider: Optional[TunnelProvider] = None
    tunnel: Optional[TunnelHandle] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    started: asyncio.Event = field(default_factory=asyncio.Event)
    stop_task: Optional[asyncio.Task] = None


class SeedSessionManager:
    def __init__(self, config: SharingConfig, progress: Optional[ProgressChannel] = None,
                 provider_factory: Optional[Callable[[ProviderKind], TunnelProvider]] = None):
        self.config = config
        self.progress = progress or ProgressChannel()
        self._provider_factory = provider_factory or (lambda kind: create_provider(kind, config))
        self._seeds: Dict[str, _Seed] = {}
        self._registry_lock = asyncio.Lock()

    @property
    def registry_path(self) -> Path:
        return self.config.state_dir / REGISTRY_FILE

    async def start(self) -> List[str]:
        """Force-close tunnels left behind by a previous run.

        Returns the export ids whose leftovers were closed.
        """
        recorded = await self._load_registry()
        orphaned = [export_id for export_id in recorded if export_id not in self._seeds]
        for export_id in orphaned:
            entry = recorded[export_id]
            logger.warning(f'Closing untracked share {export_id} (port {entry.get("local_port")})')
            _terminate_orphan(entry.get('tunnel_pid'), entry.get('tunnel_binary'))
        await self._save_registry()
        return orphaned

    def get_session(self, export_id: str) -> Optional[SeedSession]:
        seed = self._seeds.get(export_id)
        return seed.session if seed else None

    def active_sessions(self) -> List[SeedSession]:
        return [seed.session for seed in self._seeds.values()]

    def get_active_shares(self) -> List[dict]:
        return [seed.session.to_dict() for seed in self._seeds.values()]

    async def start_seed(self, prepared: PreparedExport, provider=None, port: int = 0) -> SeedSession:
        export_id = prepared.export_id
        if export_id in self._seeds:
            raise AlreadySeeding(f'Export {export_id} is already being seeded', export_id)

        kind = ProviderKind.parse(provider or self.config.default_provider)
        package_path = Path(prepared.package_path)
        session = SeedSession(
            export_id=export_id,
            instance_name=prepared.manifest.instance.name,
            package_path=package_path,
            file_size=0,
            provider=kind,
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        seed = _Seed(session=session, token=generate_access_token(),
                     manifest_json=prepared.manifest.to_json())
        self._seeds[export_id] = seed

        try:
            await self._open(seed, port)
        except BaseException as e:
            session.state = SeedState.FAILED
            await self._release(seed)
            self._seeds.pop(export_id, None)
            message = e.message if isinstance(e, SharingError) else (str(e) or type(e).__name__)
            if isinstance(e, SharingError):
                e.operation_id = e.operation_id or export_id
            self.progress.emit(export_id, Stage.FAILED, 100, message)
            logger.error(f'Failed to start share {export_id}: {message}')
            raise
        finally:
            seed.started.set()

        self.progress.emit(export_id, Stage.COMPLETE, 100, f'Sharing at {session.public_url}')
        return session

    async def _open(self, seed: _Seed, port: int):
        session = seed.session
        try:
            session.file_size = (await aiofiles.os.stat(session.package_path)).st_size
            seed.checksum = await calculate_file_hash(session.package_path, self.config.chunk_size)
        except FileNotFoundError:
            raise SourceUnavailable(f'Package not found: {session.package_path}', session.export_id)
        except OSError as e:
            raise translate_os_error(e, session.export_id)

        seed.server = PackageServer(seed, self)
        session.local_port = await seed.server.start(port)
        session.state = SeedState.LISTENING
        self.progress.emit(session.export_id, Stage.TUNNELING, 50,
                           f'Starting {session.provider.value} tunnel...')

        seed.provider = self._provider_factory(session.provider)
        seed.tunnel = await seed.provider.open_tunnel(session.local_port)
        # The token path segment is the only access control on the share
        session.public_url = f'{seed.tunnel.public_url.rstrip("/")}/{seed.token}'
        session.state = SeedState.PUBLISHED
        await self._save_registry()
        logger.info(f'Share {session.export_id} published via {session.provider.value}')

    async def _release(self, seed: _Seed):
        if seed.server is not None:
            await seed.server.stop()
        if seed.provider is not None:
            try:
                await seed.provider.close_tunnel(seed.tunnel)
            except Exception as e:
                logger.warning(f'Error closing tunnel for {seed.session.export_id}: {e}')

    async def stop_seed(self, export_id: str) -> None:
        """Stop a share. Unknown ids are a no-op."""
        seed = self._seeds.get(export_id)
        if seed is None:
            return
        await seed.started.wait()
        if export_id not in self._seeds:
            return
        if seed.stop_task is None:
            seed.stop_task = asyncio.create_task(self._stop(seed))
        await asyncio.shield(seed.stop_task)

    async def _stop(self, seed: _Seed):
        session = seed.session
        session.state = SeedState.STOPPING
        logger.info(f'Stopping share {session.export_id}')
        try:
            await self._release(seed)
        finally:
            session.state = SeedState.STOPPED
            self._seeds.pop(session.export_id, None)
            await self._save_registry()
            self.progress.forget(session.export_id)

    async def stop_all(self) -> None:
        await asyncio.gather(*(self.stop_seed(export_id) for export_id in list(self._seeds)))

    async def record_download(self, export_id: str, nbytes: int) -> None:
        """Count one completed peer download and its final bytes."""
        await self._update_counters(export_id, nbytes, completed=True)

    async def record_upload(self, export_id: str, nbytes: int) -> None:
        """Add bytes sent to a peer without counting a download."""
        await self._update_counters(export_id, nbytes, completed=False)

    async def _update_counters(self, export_id: str, nbytes: int, completed: bool):
        if nbytes < 0:
            raise ValueError(f'Byte count must be non-negative, got {nbytes}')
        seed = self._seeds.get(export_id)
        if seed is None:
            logger.debug(f'Ignoring counters for unknown share {export_id}')
            return
        async with seed.lock:
            session = seed.session
            session.uploaded_bytes += nbytes
            if completed:
                session.download_count += 1
                logger.info(f'Share {export_id}: download #{session.download_count} completed')
                self.progress.emit(
                    export_id, Stage.TRANSFERRING, 100,
                    f'{session.download_count} download(s), {session.uploaded_bytes} bytes uploaded',
                )

    async def _load_registry(self) -> Dict[str, dict]:
        try:
            async with aiofiles.open(self.registry_path, 'r', encoding='utf-8') as f:
                data = json.loads(await f.read())
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f'Ignoring unreadable seed registry {self.registry_path}: {e}')
            return {}
        return data if isinstance(data, dict) else {}

    def _registry_entries(self) -> Dict[str, dict]:
        entries = {}
        for export_id, seed in self._seeds.items():
            if seed.session.state not in (SeedState.LISTENING, SeedState.PUBLISHED):
                continue
            entries[export_id] = {
                'local_port': seed.session.local_port,
                'provider': seed.session.provider.value,
                'tunnel_pid': seed.tunnel.pid if seed.tunnel else None,
                'tunnel_binary': seed.provider.binary if seed.provider else None,
                'recorded_at': time.time(),
            }
        return entries

    async def _save_registry(self):
        # Snapshot under the lock: the last write wins with the latest sessions
        async with self._registry_lock:
            entries = self._registry_entries()
            try:
                await aiofiles.os.makedirs(self.config.state_dir, exist_ok=True)
                tmp_path = self.registry_path.with_suffix('.tmp')
                async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                    await f.write(json.dumps(entries, indent=2))
                await aiofiles.os.replace(tmp_path, self.registry_path)
            except OSError as e:
                logger.warning(f'Could not write seed registry: {e}')


async def _close_writer(writer: StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as e:
        logger.debug(f'Error closing connection: {e}')


def _terminate_orphan(pid: Optional[int], binary: Optional[str]) -> None:
    if not pid or pid == os.getpid():
        return
    # Guard against pid reuse where the process table can be inspected
    cmdline = Path(f'/proc/{pid}/cmdline')
    if binary and cmdline.parent.exists():
        try:
            if Path(binary).name.encode() not in cmdline.read_bytes():
                return
        except OSError:
            return
    try:
        os.kill(pid, signal.SIGTERM)
        logger.info(f'Terminated orphaned tunnel process {pid}')
    except ProcessLookupError:
        pass
    except PermissionError as e:
        logger.warning(f'Could not terminate orphaned tunnel process {pid}: {e}')
