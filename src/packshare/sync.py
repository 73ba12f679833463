"""
Client-side cache of sharing state and its reconciliation with the backend.

`SharingStore` is what a UI reads. It is eventually consistent and never
authoritative: `ReconciliationSync` periodically replaces its seed map
wholesale with the backend's list of active shares.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Protocol

from .progress import SharingProgress

logger = logging.getLogger(__name__)


class ShareSource(Protocol):
    async def get_active_shares(self) -> List[dict]:
        ...


class SharingStore:
    def __init__(self):
        self.export_progress: Optional[SharingProgress] = None
        self.import_progress: Optional[SharingProgress] = None
        self._seeds: Dict[str, dict] = {}
        self._downloads: Dict[str, dict] = {}

    @property
    def seeds(self) -> Dict[str, dict]:
        """A copy of the cached seed map, keyed by share id."""
        return {share_id: dict(share) for share_id, share in self._seeds.items()}

    @property
    def downloads(self) -> Dict[str, dict]:
        return {url: dict(d) for url, d in self._downloads.items()}

    def set_export_progress(self, progress: Optional[SharingProgress]) -> None:
        self.export_progress = progress

    def set_import_progress(self, progress: Optional[SharingProgress]) -> None:
        self.import_progress = progress

    def is_exporting(self) -> bool:
        return self.export_progress is not None

    def is_importing(self) -> bool:
        return self.import_progress is not None

    def add_seed(self, share: dict) -> None:
        self._seeds[share['share_id']] = dict(share)

    def update_seed(self, share_id: str, **updates) -> None:
        share = self._seeds.get(share_id)
        if share is not None:
            self._seeds[share_id] = {**share, **updates}

    def remove_seed(self, share_id: str) -> None:
        self._seeds.pop(share_id, None)

    def replace_seeds(self, shares: Iterable[dict]) -> None:
        self._seeds = {share['share_id']: dict(share) for share in shares}

    def add_download(self, source_url: str, session: dict) -> None:
        self._downloads[source_url] = dict(session)

    def update_download(self, source_url: str, **updates) -> None:
        download = self._downloads.get(source_url)
        if download is not None:
            self._downloads[source_url] = {**download, **updates}

    def remove_download(self, source_url: str) -> None:
        self._downloads.pop(source_url, None)


class ReconciliationSync:
    def __init__(self, store: SharingStore, backend: ShareSource, interval: float = 30.0):
        self.store = store
        self.backend = backend
        self.interval = interval
        self.warnings: List[str] = []
        self._task: Optional[asyncio.Task] = None

    async def sync_with_backend(self) -> bool:
        """Replace the cached seed map with the backend's list.

        On failure the cache is left as it was, a warning is recorded and
        False is returned.
        """
        try:
            shares = await self.backend.get_active_shares()
            snapshot = [dict(share) for share in shares]
            for share in snapshot:
                if not share.get('share_id'):
                    raise ValueError(f'share without share_id: {share!r}')
        except Exception as e:
            message = f'Failed to sync shares with backend: {str(e) or type(e).__name__}'
            self.warnings.append(message)
            logger.warning(message)
            return False

        self.store.replace_seeds(snapshot)
        logger.debug(f'Synced {len(snapshot)} share(s) from backend')
        return True

    async def _run(self):
        while True:
            await self.sync_with_backend()
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
