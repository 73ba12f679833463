"""
Runtime configuration for sharing.

Defaults live on the dataclass; `SharingConfig.from_env()` applies
PACKSHARE_* environment overrides on top of them.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from . import __version__

logger = logging.getLogger(__name__)


@dataclass
class SharingConfig:
    data_dir: Path = field(default_factory=lambda: Path.home() / '.packshare')
    default_provider: str = 'relay'
    relay_binary: str = 'bore'
    relay_server: str = 'bore.pub'
    # Relay candidates checked in order before a relay tunnel starts; empty skips the check
    relay_servers: Tuple[str, ...] = ()
    relay_control_port: int = 7835
    relay_check_timeout: float = 5.0
    relay_check_attempts: int = 2
    edge_binary: str = 'cloudflared'
    bind_host: str = '127.0.0.1'
    tunnel_timeout: float = 30.0
    stall_timeout: float = 30.0
    read_timeout: float = 120.0
    request_timeout: float = 300.0
    max_connections: int = 10
    chunk_size: int = 64 * 1024
    speed_smoothing: float = 0.3
    producer_version: str = __version__

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        if not 0 < self.speed_smoothing <= 1:
            raise ValueError(f'speed_smoothing must be in (0, 1], got {self.speed_smoothing}')

    @property
    def temp_dir(self) -> Path:
        """Where built packages are written."""
        return self.data_dir / 'sharing' / 'temp'

    @property
    def downloads_dir(self) -> Path:
        return self.data_dir / 'sharing' / 'downloads'

    @property
    def state_dir(self) -> Path:
        return self.data_dir / 'sharing' / 'state'

    @classmethod
    def from_env(cls, data_dir: Optional[Path] = None) -> 'SharingConfig':
        config = cls(data_dir=data_dir) if data_dir else cls()
        config._apply_env_overrides()
        return config

    def _apply_env_overrides(self) -> None:
        env = os.environ
        if 'PACKSHARE_DATA_DIR' in env:
            self.data_dir = Path(env['PACKSHARE_DATA_DIR']).expanduser()
        if 'PACKSHARE_PROVIDER' in env:
            self.default_provider = env['PACKSHARE_PROVIDER'].lower()
        if 'PACKSHARE_RELAY_BIN' in env:
            self.relay_binary = env['PACKSHARE_RELAY_BIN']
        if 'PACKSHARE_EDGE_BIN' in env:
            self.edge_binary = env['PACKSHARE_EDGE_BIN']
        if 'PACKSHARE_RELAY_SERVERS' in env:
            self.relay_servers = tuple(
                s.strip() for s in env['PACKSHARE_RELAY_SERVERS'].split(',') if s.strip()
            )
        for name in ('tunnel_timeout', 'stall_timeout', 'read_timeout', 'request_timeout'):
            key = f'PACKSHARE_{name.upper()}'
            if key in env:
                try:
                    setattr(self, name, float(env[key]))
                except ValueError:
                    logger.warning(f'Ignoring invalid {key}={env[key]!r}')
