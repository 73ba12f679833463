"""
Client side of a share: fetch the manifest header, stream the package to a
staging file, verify it, then move it into place.
"""

import asyncio
import enum
import hashlib
import logging
import time
import uuid
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import aiofiles
import aiofiles.os
import aiohttp

from .config import SharingConfig
from .errors import (
    ChecksumMismatch, ConnectionLost, ManifestInvalid, SharingError, translate_os_error,
)
from .manifest import Manifest, validate
from .progress import ProgressChannel, Stage
from .protocol import (
    CHECKSUM_HEADER, DOWNLOAD_ROUTE, MANIFEST_ENTRY, MANIFEST_ROUTE, PACKAGE_EXTENSION,
    Finished, Progress, Started, TransferEvent,
)

logger = logging.getLogger(__name__)


class DownloadState(str, enum.Enum):
    CONNECTING = 'connecting'
    TRANSFERRING = 'transferring'
    VERIFYING = 'verifying'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


TERMINAL_STATES = (DownloadState.COMPLETED, DownloadState.FAILED, DownloadState.CANCELLED)


@dataclass
class DownloadSession:
    download_id: str
    source_url: str
    destination: Path
    progress: float = 0.0
    downloaded_bytes: int = 0
    total_bytes: int = 0
    peer_count: int = 0
    speed: float = 0.0
    state: DownloadState = DownloadState.CONNECTING
    stalled: bool = False
    manifest: Optional[Manifest] = None
    error: Optional[SharingError] = None
    checksum: Optional[str] = None

    @property
    def staging_path(self) -> Path:
        return self.destination.parent / f'.{self.destination.name}.part'

    def to_dict(self) -> dict:
        return {
            'source_url': self.source_url,
            'progress': self.progress,
            'downloaded_bytes': self.downloaded_bytes,
            'total_bytes': self.total_bytes,
            'peer_count': self.peer_count,
            'speed': self.speed,
            'state': self.state.value,
            'stalled': self.stalled,
        }


class TransferAccumulator:
    """Folds transport events into a DownloadSession's counters.

    Percent stays 0 until a Started event supplies the total; speed is an
    exponentially weighted moving average of per-chunk rates in bytes/s.
    """

    def __init__(self, session: DownloadSession, smoothing: float = 0.3,
                 clock: Callable[[], float] = time.monotonic):
        self.session = session
        self.smoothing = smoothing
        self.clock = clock
        self.header_parsed = False
        self.finished = False
        self.last_activity = clock()
        self._last_sample = self.last_activity
        self._pending = 0
        self._has_rate = False

    def consume(self, event: TransferEvent) -> None:
        session = self.session
        now = self.clock()
        if isinstance(event, Started):
            self.header_parsed = True
            session.total_bytes = max(0, event.content_length)
            session.downloaded_bytes = 0
            self._last_sample = now
        elif isinstance(event, Progress):
            session.downloaded_bytes += event.chunk_length
            session.stalled = False
            self._pending += event.chunk_length
            elapsed = now - self._last_sample
            if elapsed > 0:
                rate = self._pending / elapsed
                if self._has_rate:
                    session.speed = self.smoothing * rate + (1 - self.smoothing) * session.speed
                else:
                    session.speed = rate
                    self._has_rate = True
                self._pending = 0
                self._last_sample = now
        elif isinstance(event, Finished):
            self.finished = True
        self.last_activity = now
        session.progress = self.percent()

    def percent(self) -> float:
        session = self.session
        if not self.header_parsed:
            return 0.0
        if session.total_bytes == 0:
            return 100.0 if self.finished else 0.0
        return min(100.0, max(0.0, session.downloaded_bytes / session.total_bytes * 100))


@dataclass
class DownloadHandle:
    session: DownloadSession
    task: asyncio.Task
    _manager: 'DownloadSessionManager' = field(repr=False)

    @property
    def download_id(self) -> str:
        return self.session.download_id

    async def wait(self) -> Path:
        """Wait for the download and return the verified package path."""
        return await asyncio.shield(self.task)

    async def cancel(self) -> None:
        await self._manager.cancel(self.download_id)


def _share_route(public_url: str, route: str) -> str:
    return public_url.rstrip('/') + route


class DownloadSessionManager:
    def __init__(self, config: SharingConfig, progress: Optional[ProgressChannel] = None):
        self.config = config
        self.progress = progress or ProgressChannel()
        self._downloads: Dict[str, DownloadHandle] = {}

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=None, sock_connect=self.config.tunnel_timeout,
                                     sock_read=self.config.read_timeout)

    def get(self, download_id: str) -> Optional[DownloadHandle]:
        return self._downloads.get(download_id)

    def active_downloads(self) -> List[DownloadSession]:
        return [h.session for h in self._downloads.values() if h.session.state not in TERMINAL_STATES]

    async def fetch_manifest(self, public_url: str, operation_id: Optional[str] = None) -> Manifest:
        """Fetch and validate only the header of a share."""
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as http:
                return await self._get_manifest(http, public_url, operation_id)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ConnectionLost(f'Failed to fetch manifest: {e}', operation_id)

    async def _get_manifest(self, http: aiohttp.ClientSession, public_url: str,
                            operation_id: Optional[str]) -> Manifest:
        async with http.get(_share_route(public_url, MANIFEST_ROUTE)) as resp:
            if resp.status != 200:
                raise ConnectionLost(f'Manifest fetch failed with status {resp.status}', operation_id)
            text = await resp.text()
        try:
            return validate(Manifest.from_json(text))
        except ManifestInvalid as e:
            e.operation_id = operation_id
            raise

    def start_download(self, public_url: str, destination: Optional[Path] = None) -> DownloadHandle:
        """Start pulling a share in the background and return its handle."""
        download_id = uuid.uuid4().hex
        destination = Path(destination) if destination else \
            self.config.downloads_dir / f'{download_id}{PACKAGE_EXTENSION}'
        session = DownloadSession(download_id=download_id, source_url=public_url,
                                  destination=destination)
        task = asyncio.create_task(self._run(session))
        task.add_done_callback(_retrieve_result)
        handle = DownloadHandle(session=session, task=task, _manager=self)
        self._downloads[download_id] = handle
        logger.info(f'Download {download_id} started from {public_url}')
        return handle

    async def cancel(self, download_id: str) -> None:
        """Cancel a download. Finished or unknown downloads are left as they are."""
        handle = self._downloads.get(download_id)
        if handle is None or handle.task.done():
            return
        handle.task.cancel()
        await asyncio.gather(handle.task, return_exceptions=True)
        handle.session.state = DownloadState.CANCELLED
        await _discard(handle.session.staging_path)

    async def _run(self, session: DownloadSession) -> Path:
        download_id = session.download_id
        accumulator = TransferAccumulator(session, self.config.speed_smoothing)
        watchdog = asyncio.create_task(self._watch_stall(session, accumulator))
        self.progress.emit(download_id, Stage.TRANSFERRING, 0, 'Connecting...')
        try:
            expected = await self._transfer(session, accumulator)
            if session.downloaded_bytes != session.total_bytes:
                raise ConnectionLost(
                    f'Connection closed after {session.downloaded_bytes} of '
                    f'{session.total_bytes} bytes', download_id,
                )
            accumulator.consume(Finished())

            session.state = DownloadState.VERIFYING
            self.progress.emit(download_id, Stage.VERIFYING, 100, 'Verifying package...')
            await self._verify(session, expected)
            await aiofiles.os.replace(session.staging_path, session.destination)
        except asyncio.CancelledError:
            session.state = DownloadState.CANCELLED
            await _discard(session.staging_path)
            logger.info(f'Download {download_id} cancelled')
            raise
        except Exception as e:
            error = self._classify(e, download_id)
            session.state = DownloadState.FAILED
            session.error = error
            await _discard(session.staging_path)
            self.progress.emit(download_id, Stage.FAILED, session.progress, error.message)
            logger.error(f'Download {download_id} failed: {error}')
            if error is e:
                raise
            raise error from e
        finally:
            watchdog.cancel()
            session.peer_count = 0

        session.state = DownloadState.COMPLETED
        self.progress.emit(download_id, Stage.COMPLETE, 100, 'Download complete!')
        logger.info(f'Download {download_id} complete: {session.destination}')
        return session.destination

    @staticmethod
    def _classify(exc: Exception, download_id: str) -> SharingError:
        if isinstance(exc, SharingError):
            exc.operation_id = exc.operation_id or download_id
            return exc
        if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError)):
            return ConnectionLost(f'Connection lost: {exc or type(exc).__name__}', download_id)
        if isinstance(exc, OSError):
            return translate_os_error(exc, download_id)
        return SharingError(f'Unexpected download error: {exc}', download_id)

    async def _transfer(self, session: DownloadSession, accumulator: TransferAccumulator) -> Optional[str]:
        """Stream the package body into staging; returns the advertised checksum."""
        download_id = session.download_id
        digest = hashlib.sha256()
        async with aiohttp.ClientSession(timeout=self._timeout()) as http:
            session.manifest = await self._get_manifest(http, session.source_url, download_id)

            async with http.get(_share_route(session.source_url, DOWNLOAD_ROUTE)) as resp:
                if resp.status != 200:
                    raise ConnectionLost(f'Download failed with status {resp.status}', download_id)
                if resp.content_length is None:
                    raise ConnectionLost('Seed did not declare a content length', download_id)
                expected = resp.headers.get(CHECKSUM_HEADER)

                session.peer_count = 1
                session.state = DownloadState.TRANSFERRING
                accumulator.consume(Started(resp.content_length))
                await aiofiles.os.makedirs(session.staging_path.parent, exist_ok=True)

                last_percent = -1
                async with aiofiles.open(session.staging_path, 'wb') as f:
                    async for chunk in resp.content.iter_chunked(self.config.chunk_size):
                        await f.write(chunk)
                        digest.update(chunk)
                        accumulator.consume(Progress(len(chunk)))
                        percent = int(session.progress)
                        if percent != last_percent:
                            last_percent = percent
                            self.progress.emit(
                                download_id, Stage.TRANSFERRING, percent,
                                f'{session.downloaded_bytes} of {session.total_bytes} bytes',
                            )
        session.checksum = digest.hexdigest()
        return expected

    async def _verify(self, session: DownloadSession, expected: Optional[str]):
        download_id = session.download_id
        actual = session.checksum
        if not expected:
            raise ChecksumMismatch('Seed did not advertise a package checksum', download_id)
        if actual != expected.lower():
            raise ChecksumMismatch(f'Package checksum {actual} does not match {expected}', download_id)

        def check_archive():
            try:
                with zipfile.ZipFile(session.staging_path) as archive:
                    bad = archive.testzip()
                    if bad is not None:
                        raise ChecksumMismatch(f'Corrupt package entry: {bad}', download_id)
                    embedded = Manifest.from_json(archive.read(MANIFEST_ENTRY))
            except (zipfile.BadZipFile, KeyError) as e:
                raise ChecksumMismatch(f'Package archive is invalid: {e}', download_id)
            if embedded != session.manifest:
                raise ChecksumMismatch('Package manifest does not match the advertised header', download_id)

        await asyncio.to_thread(check_archive)

    async def _watch_stall(self, session: DownloadSession, accumulator: TransferAccumulator):
        interval = max(self.config.stall_timeout / 4, 0.05)
        while True:
            await asyncio.sleep(interval)
            if session.state not in (DownloadState.CONNECTING, DownloadState.TRANSFERRING):
                continue
            idle = accumulator.clock() - accumulator.last_activity
            if idle >= self.config.stall_timeout and not session.stalled:
                session.stalled = True
                logger.warning(f'Download {session.download_id} stalled: no data for {idle:.0f}s')
                self.progress.emit(session.download_id, Stage.TRANSFERRING, session.progress,
                                   f'Download stalled (no data for {idle:.0f}s)')


def _retrieve_result(task: asyncio.Task) -> None:
    # Failures are recorded on the session; keep asyncio from logging them again
    if not task.cancelled():
        task.exception()


async def _discard(path: Path) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f'Could not remove staging file {path}: {e}')
