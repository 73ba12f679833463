"""
Tests for the client-side sharing cache and its reconciliation loop.
"""

import aiohttp

from packshare.errors import ConnectionLost
from packshare.progress import SharingProgress, Stage
from packshare.sync import ReconciliationSync, SharingStore

from conftest import wait_until


def share(share_id: str, **fields) -> dict:
    return {'share_id': share_id, 'public_url': f'http://bore.pub:1/{share_id}',
            'download_count': 0, **fields}


class FakeBackend:
    def __init__(self, shares=None):
        self.shares = list(shares or [])
        self.error = None
        self.calls = 0

    async def get_active_shares(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.shares)


class TestSharingStore:
    """Tests for cache mutations."""

    def test_add_is_idempotent(self):
        store = SharingStore()
        store.add_seed(share('a'))
        store.add_seed(share('a'))
        assert list(store.seeds) == ['a']

    def test_remove_missing_is_noop(self):
        store = SharingStore()
        store.remove_seed('a')
        assert store.seeds == {}

    def test_update(self):
        store = SharingStore()
        store.add_seed(share('a'))
        store.update_seed('a', download_count=3)
        store.update_seed('ghost', download_count=9)
        assert store.seeds == {'a': share('a', download_count=3)}

    def test_seeds_returns_copies(self):
        store = SharingStore()
        store.add_seed(share('a'))
        store.seeds['a']['download_count'] = 99
        assert store.seeds['a']['download_count'] == 0

    def test_flags(self):
        store = SharingStore()
        assert not store.is_exporting() and not store.is_importing()
        store.set_export_progress(SharingProgress('op', Stage.PACKAGING, 40, 'Packaging'))
        assert store.is_exporting()
        store.set_export_progress(None)
        assert not store.is_exporting()

    def test_downloads(self):
        store = SharingStore()
        store.add_download('http://x/1', {'progress': 0})
        store.update_download('http://x/1', progress=50)
        assert store.downloads == {'http://x/1': {'progress': 50}}
        store.remove_download('http://x/1')
        store.remove_download('http://x/1')
        assert store.downloads == {}


class TestReconciliationSync:
    """Tests for replacing the cache with the backend's view."""

    async def test_full_replace(self):
        store = SharingStore()
        store.add_seed(share('stale'))
        store.add_seed(share('kept', download_count=1))
        backend = FakeBackend([share('kept', download_count=5), share('new')])

        assert await ReconciliationSync(store, backend).sync_with_backend()

        assert set(store.seeds) == {'kept', 'new'}
        assert store.seeds['kept']['download_count'] == 5

    async def test_backend_failure_keeps_cache(self):
        store = SharingStore()
        store.add_seed(share('a'))
        importing = SharingProgress('op', Stage.TRANSFERRING, 10, 'Downloading')
        store.set_import_progress(importing)
        backend = FakeBackend()
        backend.error = ConnectionLost('backend unreachable')
        sync = ReconciliationSync(store, backend)

        assert not await sync.sync_with_backend()

        assert store.seeds == {'a': share('a')}
        assert store.import_progress is importing
        assert not store.is_exporting()
        assert len(sync.warnings) == 1
        assert 'backend unreachable' in sync.warnings[0]

    async def test_client_disconnect_keeps_cache(self):
        store = SharingStore()
        store.add_seed(share('a'))
        backend = FakeBackend()
        backend.error = aiohttp.ServerDisconnectedError()
        sync = ReconciliationSync(store, backend)

        assert not await sync.sync_with_backend()

        assert store.seeds == {'a': share('a')}
        assert 'Server disconnected' in sync.warnings[0]

    async def test_malformed_response_keeps_cache(self):
        store = SharingStore()
        store.add_seed(share('a'))
        sync = ReconciliationSync(store, FakeBackend([{'public_url': 'http://x'}]))

        assert not await sync.sync_with_backend()
        assert list(store.seeds) == ['a']

    async def test_empty_backend_clears_cache(self):
        store = SharingStore()
        store.add_seed(share('a'))
        assert await ReconciliationSync(store, FakeBackend([])).sync_with_backend()
        assert store.seeds == {}

    async def test_periodic_sync(self):
        store = SharingStore()
        backend = FakeBackend([share('a')])
        sync = ReconciliationSync(store, backend, interval=0.01)

        task = sync.start()
        assert sync.start() is task
        assert await wait_until(lambda: backend.calls >= 2)
        await sync.stop()

        assert task.done()
        assert list(store.seeds) == ['a']
        await sync.stop()

    async def test_periodic_sync_survives_failures(self):
        store = SharingStore()
        backend = FakeBackend([share('a')])
        backend.error = aiohttp.ClientPayloadError('response payload is not completed')
        sync = ReconciliationSync(store, backend, interval=0.01)

        sync.start()
        assert await wait_until(lambda: len(sync.warnings) >= 2)
        backend.error = None
        assert await wait_until(lambda: 'a' in store.seeds)
        await sync.stop()
