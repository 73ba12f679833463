"""
Shared test fixtures and configuration for pytest.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import List, Optional

import pytest

from packshare.config import SharingConfig
from packshare.instances import LocalInstanceProvider
from packshare.manifest import ExportOptions
from packshare.packager import PackageBuilder
from packshare.progress import ProgressChannel
from packshare.seeder import SeedSessionManager
from packshare.tunnel import ProviderKind, TunnelHandle, TunnelProvider

INSTANCE_ID = 'my-pack'


def write_file(path: Path, size: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(os.urandom(size))
    return path


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll `predicate` until it holds or `timeout` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class FakeTunnel(TunnelProvider):
    """Tunnel provider that publishes the local listener itself."""

    kind = ProviderKind.RELAY
    display_name = 'Fake'

    def __init__(self, config: SharingConfig):
        super().__init__(config)
        self.opened: List[TunnelHandle] = []
        self.closed: List[TunnelHandle] = []
        self.fail: Optional[Exception] = None

    @property
    def binary(self) -> str:
        return 'fake-tunnel'

    def command(self, local_port: int) -> List[str]:
        return [str(local_port)]

    def parse_url(self, line: str) -> Optional[str]:
        return None

    async def open_tunnel(self, local_port: int) -> TunnelHandle:
        if self.fail is not None:
            raise self.fail
        handle = TunnelHandle(kind=self.kind, local_port=local_port,
                              public_url=f'http://127.0.0.1:{local_port}')
        self.opened.append(handle)
        return handle

    async def close_tunnel(self, handle: Optional[TunnelHandle]) -> None:
        if handle is None or handle.closed:
            return
        handle.closed = True
        self.closed.append(handle)


@pytest.fixture
def config(tmp_path) -> SharingConfig:
    return SharingConfig(
        data_dir=tmp_path / 'data',
        tunnel_timeout=5,
        stall_timeout=5,
        read_timeout=10,
        request_timeout=30,
    )


@pytest.fixture
def instances_dir(tmp_path) -> Path:
    """A client instance with mods, config, one resource pack and two worlds."""
    root = tmp_path / 'instances'
    instance = root / INSTANCE_ID
    instance.mkdir(parents=True)
    (instance / 'instance.json').write_text(json.dumps({
        'name': 'My Pack',
        'game_version': '1.20.1',
        'loader': 'fabric',
        'loader_version': '0.15.0',
    }))
    write_file(instance / 'mods' / 'sodium.jar', 1000)
    write_file(instance / 'mods' / 'lithium.jar', 2500)
    write_file(instance / 'config' / 'sodium.json', 120)
    write_file(instance / 'config' / 'nested' / 'options.toml', 30)
    write_file(instance / 'resourcepacks' / 'faithful.zip', 400)
    write_file(instance / 'saves' / 'World1' / 'level.dat', 64)
    write_file(instance / 'saves' / 'World1' / 'region' / 'r.0.0.mca', 2048)
    write_file(instance / 'saves' / 'World2' / 'level.dat', 10)
    write_file(instance / 'saves' / 'not-a-world' / 'notes.txt', 5)
    write_file(instance / 'logs' / 'latest.log', 50)
    return root


@pytest.fixture
def progress() -> ProgressChannel:
    return ProgressChannel()


@pytest.fixture
def provider(instances_dir) -> LocalInstanceProvider:
    return LocalInstanceProvider(instances_dir)


@pytest.fixture
def builder(provider, config, progress) -> PackageBuilder:
    return PackageBuilder(provider, config, progress)


@pytest.fixture
def fake_tunnel(config) -> FakeTunnel:
    return FakeTunnel(config)


@pytest.fixture
async def prepared(builder):
    options = ExportOptions(include_resourcepacks=True, include_worlds=['World1'])
    return await builder.prepare_export(INSTANCE_ID, options)


@pytest.fixture
async def seeds(config, progress, fake_tunnel):
    manager = SeedSessionManager(config, progress, provider_factory=lambda kind: fake_tunnel)
    yield manager
    await manager.stop_all()
