import asyncio
import logging
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import aiofiles.os

from .config import SharingConfig
from .errors import SharingError, translate_os_error
from .instances import InstanceContentProvider, sanitize_filename
from .manifest import (
    CATEGORIES, FORMAT_VERSION, ContentSection, ExportableContent, ExportableWorld,
    ExportOptions, Manifest, PreparedExport, SavesSection, SourceFile, WorldEntry,
    validate,
)
from .progress import ProgressChannel, Stage
from .protocol import MANIFEST_ENTRY, PACKAGE_EXTENSION, generate_export_id

logger = logging.getLogger(__name__)

COPY_BUFFER = 1024 * 1024


def select_worlds(content: ExportableContent, requested: List[str]) -> Tuple[List[ExportableWorld], List[str]]:
    """Split requested world names into available worlds and missing names."""
    selected, missing, seen = [], [], set()
    for name in requested:
        if name in seen:
            continue
        seen.add(name)
        world = content.world(name)
        if world is None:
            missing.append(name)
        else:
            selected.append(world)
    return selected, missing


def _copy_into(archive: zipfile.ZipFile, source: SourceFile) -> int:
    """Stream one file into the archive and return the bytes written."""
    written = 0
    with open(source.path, 'rb') as src, archive.open(source.arcname, 'w', force_zip64=True) as dst:
        while True:
            chunk = src.read(COPY_BUFFER)
            if not chunk:
                break
            dst.write(chunk)
            written += len(chunk)
    return written


class PackageBuilder:
    """Builds distributable packages from instance snapshots."""

    def __init__(self, provider: InstanceContentProvider, config: SharingConfig,
                 progress: Optional[ProgressChannel] = None):
        self.provider = provider
        self.config = config
        self.progress = progress or ProgressChannel()

    async def prepare_export(self, instance_id: str, options: ExportOptions,
                             export_id: Optional[str] = None) -> PreparedExport:
        export_id = export_id or generate_export_id()
        self.progress.emit(export_id, Stage.SCANNING, 0, 'Scanning files...')

        try:
            content = await self.provider.exportable_content(instance_id)
            prepared = await self._build(export_id, content, options)
        except SharingError as e:
            e.operation_id = export_id
            self.progress.emit(export_id, Stage.FAILED, 100, e.message)
            logger.error(f'Export {export_id} failed: {e}')
            raise

        self.progress.emit(export_id, Stage.COMPLETE, 100, 'Export ready!')
        logger.info(f'Export {export_id} ready: {prepared.package_path} '
                    f'({prepared.manifest.total_size_bytes} bytes of content)')
        return prepared

    async def _build(self, export_id: str, content: ExportableContent,
                     options: ExportOptions) -> PreparedExport:
        worlds, missing = select_worlds(content, options.include_worlds)
        if missing:
            message = f'World(s) not found and skipped: {", ".join(missing)}'
            logger.warning(f'[{export_id}] {message}')
            self.progress.emit(export_id, Stage.SCANNING, 5, message)

        plan: Dict[str, List[SourceFile]] = {}
        for category in CATEGORIES:
            section = content.section(category)
            if options.includes(category) and section.available:
                plan[category] = list(section.files)

        temp_dir = self.config.temp_dir
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        package_path = temp_dir / f'{sanitize_filename(content.instance_name)}-{timestamp}-{export_id[:8]}{PACKAGE_EXTENSION}'
        partial_path = package_path.with_suffix(PACKAGE_EXTENSION + '.part')

        self.progress.emit(export_id, Stage.PACKAGING, 10, 'Creating archive...')
        loop = asyncio.get_running_loop()
        total_files = sum(len(files) for files in plan.values()) + sum(len(w.files) for w in worlds)

        def report(done: int):
            progress = 10 + (done * 80) // max(total_files, 1)
            loop.call_soon_threadsafe(
                self.progress.emit, export_id, Stage.PACKAGING, progress,
                f'Packaging {done} of {total_files} files...',
            )

        def write_archive() -> Manifest:
            sections = {name: ContentSection() for name in CATEGORIES}
            world_entries = []
            done = 0
            with zipfile.ZipFile(partial_path, 'w', compression=zipfile.ZIP_DEFLATED) as archive:
                for category, files in plan.items():
                    written = 0
                    for source in files:
                        written += _copy_into(archive, source)
                        done += 1
                        if done % 20 == 0:
                            report(done)
                    sections[category] = ContentSection(
                        included=True, count=content.section(category).count, size_bytes=written,
                    )
                for world in worlds:
                    written = 0
                    for source in world.files:
                        written += _copy_into(archive, source)
                        done += 1
                        if done % 20 == 0:
                            report(done)
                    world_entries.append(WorldEntry(
                        name=world.folder_name,
                        size_bytes=written,
                        additional_folders=world.additional_folders,
                    ))

                saves = SavesSection(included=bool(world_entries), worlds=tuple(world_entries))
                manifest = Manifest(
                    format_version=FORMAT_VERSION,
                    producer_version=self.config.producer_version,
                    created_at=datetime.now(timezone.utc).isoformat(timespec='seconds'),
                    instance=content.instance,
                    saves=saves,
                    total_size_bytes=sum(s.size_bytes for s in sections.values()) + saves.size_bytes,
                    **sections,
                )
                validate(manifest)
                archive.writestr(MANIFEST_ENTRY, manifest.to_json())
            return manifest

        try:
            await aiofiles.os.makedirs(temp_dir, exist_ok=True)
            manifest = await asyncio.to_thread(write_archive)
            await aiofiles.os.replace(partial_path, package_path)
        except OSError as e:
            await self._discard(partial_path)
            raise translate_os_error(e, export_id)
        except BaseException:
            await self._discard(partial_path)
            raise

        return PreparedExport(export_id=export_id, package_path=package_path, manifest=manifest)

    async def _discard(self, path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f'Could not remove partial package {path}: {e}')

    async def cleanup_export(self, prepared: PreparedExport) -> None:
        """Delete a prepared package from disk."""
        await self._discard(Path(prepared.package_path))
        self.progress.forget(prepared.export_id)
