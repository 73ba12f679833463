"""
The long-lived sharing backend.

`SharingBackend` is the authoritative owner of prepared exports and seed
sessions and exposes the command surface clients call: get_active_shares,
prepare_export, start_seed and stop_seed, plus the import side.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import aiofiles.os

from .config import SharingConfig
from .download import DownloadSessionManager
from .errors import AlreadySeeding, SharingError, UnknownExport
from .instances import InstanceContentProvider, ModResolver, content_folder, read_package_manifest
from .manifest import ExportableContent, ExportOptions, Manifest, PreparedExport
from .packager import PackageBuilder
from .progress import ProgressChannel, Stage
from .seeder import SeedSession, SeedSessionManager
from .tunnel import ProviderKind, TunnelProvider

logger = logging.getLogger(__name__)


class SharingBackend:
    def __init__(self, config: SharingConfig, instances: InstanceContentProvider,
                 progress: Optional[ProgressChannel] = None,
                 mod_resolver: Optional[ModResolver] = None,
                 provider_factory: Optional[Callable[[ProviderKind], TunnelProvider]] = None):
        self.config = config
        self.instances = instances
        self.mod_resolver = mod_resolver
        self.progress = progress or ProgressChannel()
        self.builder = PackageBuilder(instances, config, self.progress)
        self.seeds = SeedSessionManager(config, self.progress, provider_factory)
        self.downloads = DownloadSessionManager(config, self.progress)
        self._exports: Dict[str, PreparedExport] = {}

    async def start(self) -> None:
        closed = await self.seeds.start()
        if closed:
            logger.info(f'Closed {len(closed)} share(s) left over from a previous run')

    async def shutdown(self) -> None:
        await self.seeds.stop_all()
        for session in self.downloads.active_downloads():
            await self.downloads.cancel(session.download_id)

    # Export side

    async def get_exportable_content(self, instance_id: str) -> ExportableContent:
        return await self.instances.exportable_content(instance_id)

    async def prepare_export(self, instance_id: str,
                             options: Union[ExportOptions, dict, None] = None) -> PreparedExport:
        if options is None:
            options = ExportOptions()
        elif isinstance(options, dict):
            options = ExportOptions.from_dict(options)
        prepared = await self.builder.prepare_export(instance_id, options)
        self._exports[prepared.export_id] = prepared
        return prepared

    def get_export(self, export_id: str) -> Optional[PreparedExport]:
        return self._exports.get(export_id)

    async def cleanup_export(self, export_id: str) -> None:
        """Delete a prepared package that is no longer seeded."""
        if self.seeds.get_session(export_id) is not None:
            raise AlreadySeeding(f'Stop seeding {export_id} before cleaning it up', export_id)
        prepared = self._exports.pop(export_id, None)
        if prepared is not None:
            await self.builder.cleanup_export(prepared)

    async def get_active_shares(self) -> List[dict]:
        return self.seeds.get_active_shares()

    async def start_seed(self, export_id: str, provider=None, port: int = 0) -> SeedSession:
        prepared = self._exports.get(export_id)
        if prepared is None:
            raise UnknownExport(f'No prepared export with id {export_id}', export_id)
        return await self.seeds.start_seed(prepared, provider, port)

    async def stop_seed(self, export_id: str) -> None:
        await self.seeds.stop_seed(export_id)

    async def stop_all_seeds(self) -> None:
        await self.seeds.stop_all()

    # Import side

    async def fetch_share_manifest(self, share_url: str) -> Manifest:
        return await self.downloads.fetch_manifest(share_url)

    async def download_and_import(self, share_url: str, name: Optional[str] = None,
                                  re_resolve: bool = False) -> Path:
        """Pull a share, verify it and reconstruct it as a new instance."""
        import_id = uuid.uuid4().hex
        self.progress.emit(import_id, Stage.TRANSFERRING, 0, 'Downloading package...')
        handle = self.downloads.start_download(share_url)
        try:
            package_path = await handle.wait()
            return await self._import(import_id, package_path, handle.session.manifest,
                                      name, re_resolve)
        except SharingError as e:
            self._import_failed(import_id, e)
            raise
        except asyncio.CancelledError:
            await handle.cancel()
            self.progress.emit(import_id, Stage.FAILED, 100, 'Import cancelled')
            raise
        finally:
            try:
                await aiofiles.os.remove(handle.session.destination)
            except FileNotFoundError:
                pass

    async def validate_import_package(self, package_path) -> Manifest:
        """Read and validate the manifest of a package already on disk."""
        return await read_package_manifest(Path(package_path))

    async def import_package(self, package_path, name: Optional[str] = None,
                             re_resolve: bool = False) -> Path:
        """Import a package file that is already on disk. The file is kept."""
        import_id = uuid.uuid4().hex
        self.progress.emit(import_id, Stage.VERIFYING, 0, 'Reading package...')
        try:
            manifest = await self.validate_import_package(package_path)
            return await self._import(import_id, Path(package_path), manifest, name, re_resolve)
        except SharingError as e:
            self._import_failed(import_id, e)
            raise

    async def _import(self, import_id: str, package_path: Path, manifest: Manifest,
                      name: Optional[str], re_resolve: bool) -> Path:
        self.progress.emit(import_id, Stage.VERIFYING, 80, 'Creating instance...')
        instance_dir = await self.instances.apply_package(package_path, manifest, name)
        if re_resolve and self.mod_resolver is not None:
            await self._re_resolve(instance_dir, manifest)
        self.progress.emit(import_id, Stage.COMPLETE, 100, 'Import complete!')
        return instance_dir

    def _import_failed(self, import_id: str, error: SharingError) -> None:
        error.operation_id = error.operation_id or import_id
        self.progress.emit(import_id, Stage.FAILED, 100, error.message)
        logger.error(f'Import {import_id} failed: {error.message}')

    async def _re_resolve(self, instance_dir: Path, manifest: Manifest) -> None:
        mods_dir = instance_dir / content_folder(manifest.instance.loader_kind)
        if not await aiofiles.os.path.isdir(mods_dir):
            return
        files = sorted(p for p in mods_dir.rglob('*') if p.is_file())
        resolved = await self.mod_resolver.re_resolve(instance_dir, files)
        logger.info(f'Re-resolved {len(resolved)} of {len(files)} mod file(s)')
