"""
PackShare - Peer-to-peer sharing of game instances over ephemeral tunnels
"""

__version__ = '0.1.0'

from .backend import SharingBackend
from .config import SharingConfig
from .download import DownloadSession, DownloadSessionManager, DownloadState
from .errors import SharingError
from .instances import LocalInstanceProvider
from .manifest import ExportOptions, Manifest, PreparedExport
from .packager import PackageBuilder
from .progress import ProgressChannel, SharingProgress, Stage
from .seeder import SeedSession, SeedSessionManager, SeedState
from .sync import ReconciliationSync, SharingStore
from .tunnel import ProviderKind, create_provider

__all__ = [
    'SharingBackend', 'SharingConfig', 'DownloadSession', 'DownloadSessionManager',
    'DownloadState', 'SharingError', 'LocalInstanceProvider', 'ExportOptions', 'Manifest',
    'PreparedExport', 'PackageBuilder', 'ProgressChannel', 'SharingProgress', 'Stage',
    'SeedSession', 'SeedSessionManager', 'SeedState', 'ReconciliationSync', 'SharingStore',
    'ProviderKind', 'create_provider',
]
