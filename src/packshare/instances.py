"""
Instance collaborators.

The sharing core only talks to instance storage through
`InstanceContentProvider` and to a mod catalog through `ModResolver`.
`LocalInstanceProvider` is the filesystem implementation: every instance is
a directory under `instances_dir` holding an `instance.json` descriptor.
"""

import asyncio
import json
import logging
import os
import re
import shutil
import uuid
import zipfile
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Protocol, Tuple

import aiofiles
import aiofiles.os

from .errors import ChecksumMismatch, ManifestInvalid, SourceUnavailable, translate_os_error
from .manifest import (
    ExportableContent, ExportableSection, ExportableWorld, InstanceDescriptor,
    Manifest, SourceFile, validate,
)
from .protocol import MANIFEST_ENTRY

logger = logging.getLogger(__name__)

METADATA_FILE = 'instance.json'
PLUGIN_LOADERS = {'paper', 'purpur', 'velocity', 'bungeecord', 'waterfall'}
SERVER_DIMENSIONS = ('world_nether', 'world_the_end')


class InstanceContentProvider(Protocol):
    async def exportable_content(self, instance_id: str) -> ExportableContent:
        """Enumerate what instance `instance_id` can export right now."""

    async def apply_package(self, package_path: Path, manifest: Manifest,
                            name: Optional[str] = None) -> Path:
        """Reconstruct an instance from a verified package."""


class ModResolver(Protocol):
    async def re_resolve(self, instance_dir: Path, files: List[Path]) -> Dict[str, str]:
        """Re-resolve mod files against an external catalog by hash/name."""


def content_folder(loader_kind: Optional[str]) -> str:
    """Mods live under plugins/ for server platforms that use plugins."""
    return 'plugins' if (loader_kind or '').lower() in PLUGIN_LOADERS else 'mods'


def sanitize_filename(name: str) -> str:
    cleaned = re.sub(r'[/\\:*?"<>|\s]+', '-', name).strip('-.')
    return cleaned.lower() or 'instance'


def is_safe_member(name: str) -> bool:
    """Reject archive entries that could escape the target directory."""
    if not name or name.startswith(('/', '\\')):
        return False
    if len(name) >= 2 and name[1] == ':':
        return False
    parts = PurePosixPath(name.replace('\\', '/')).parts
    return '..' not in parts


async def read_package_manifest(package_path: Path) -> Manifest:
    """Read and validate the manifest embedded in a package on disk."""
    def read():
        with zipfile.ZipFile(package_path) as archive:
            return archive.read(MANIFEST_ENTRY)

    try:
        raw = await asyncio.to_thread(read)
    except FileNotFoundError as e:
        raise SourceUnavailable(f'Package not found: {package_path}') from e
    except zipfile.BadZipFile as e:
        raise ManifestInvalid(f'Package archive is invalid: {e}') from e
    except KeyError as e:
        raise ManifestInvalid(f'Missing {MANIFEST_ENTRY} in package') from e
    except OSError as e:
        raise translate_os_error(e) from e
    return validate(Manifest.from_json(raw))


def _collect_files(directory: Path, arc_prefix: str) -> List[SourceFile]:
    files = []
    for root, dirs, names in os.walk(directory):
        dirs.sort()
        for name in sorted(names):
            path = Path(root) / name
            try:
                size = path.stat().st_size
            except FileNotFoundError:
                continue
            rel = path.relative_to(directory).as_posix()
            files.append(SourceFile(path=path, arcname=f'{arc_prefix}/{rel}', size_bytes=size))
    return files


def _scan_section(directory: Path, arc_prefix: str) -> ExportableSection:
    if not directory.is_dir():
        return ExportableSection()
    count = sum(1 for _ in directory.iterdir())
    files = _collect_files(directory, arc_prefix)
    return ExportableSection(
        available=count > 0,
        count=count,
        size_bytes=sum(f.size_bytes for f in files),
        files=tuple(files),
    )


def _scan_worlds(instance_dir: Path, is_server: bool) -> Tuple[ExportableWorld, ...]:
    worlds = []
    if is_server:
        world_dir = instance_dir / 'world'
        if world_dir.is_dir():
            files = _collect_files(world_dir, 'world')
            extra = []
            for dim in SERVER_DIMENSIONS:
                if (instance_dir / dim).is_dir():
                    files.extend(_collect_files(instance_dir / dim, dim))
                    extra.append(dim)
            worlds.append(ExportableWorld(
                name='Server World',
                folder_name='world',
                size_bytes=sum(f.size_bytes for f in files),
                is_server_world=True,
                additional_folders=tuple(extra),
                files=tuple(files),
            ))
        return tuple(worlds)

    saves_dir = instance_dir / 'saves'
    if saves_dir.is_dir():
        for entry in sorted(saves_dir.iterdir()):
            # level.dat marks a real world folder
            if entry.is_dir() and (entry / 'level.dat').exists():
                files = _collect_files(entry, f'saves/{entry.name}')
                worlds.append(ExportableWorld(
                    name=entry.name,
                    folder_name=entry.name,
                    size_bytes=sum(f.size_bytes for f in files),
                    files=tuple(files),
                ))
    return tuple(worlds)


class LocalInstanceProvider:
    def __init__(self, instances_dir):
        self.instances_dir = Path(instances_dir)

    def instance_dir(self, instance_id: str) -> Path:
        return self.instances_dir / instance_id

    async def read_descriptor(self, instance_id: str) -> InstanceDescriptor:
        path = self.instance_dir(instance_id) / METADATA_FILE
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                data = json.loads(await f.read())
        except FileNotFoundError:
            raise SourceUnavailable(f'Instance not found: {instance_id}', instance_id)
        except OSError as e:
            raise translate_os_error(e, instance_id)
        except ValueError as e:
            raise SourceUnavailable(f'Invalid {METADATA_FILE} for {instance_id}: {e}', instance_id)

        return InstanceDescriptor(
            name=data.get('name') or instance_id,
            game_version=data.get('game_version', ''),
            loader_kind=data.get('loader'),
            loader_version=data.get('loader_version'),
            is_server=bool(data.get('is_server', False)),
            is_proxy=bool(data.get('is_proxy', False)),
        )

    async def exportable_content(self, instance_id: str) -> ExportableContent:
        descriptor = await self.read_descriptor(instance_id)
        instance_dir = self.instance_dir(instance_id)
        folder = content_folder(descriptor.loader_kind)

        def scan() -> ExportableContent:
            client_only = not descriptor.is_server
            return ExportableContent(
                instance_id=instance_id,
                instance=descriptor,
                mods=_scan_section(instance_dir / folder, folder),
                config=_scan_section(instance_dir / 'config', 'config'),
                resourcepacks=(_scan_section(instance_dir / 'resourcepacks', 'resourcepacks')
                               if client_only else ExportableSection()),
                shaderpacks=(_scan_section(instance_dir / 'shaderpacks', 'shaderpacks')
                             if client_only else ExportableSection()),
                worlds=_scan_worlds(instance_dir, descriptor.is_server),
            )

        try:
            return await asyncio.to_thread(scan)
        except OSError as e:
            raise translate_os_error(e, instance_id)

    async def unique_name(self, base_name: str) -> str:
        existing = set()
        if await aiofiles.os.path.isdir(self.instances_dir):
            for entry in await aiofiles.os.listdir(self.instances_dir):
                existing.add(entry)
                try:
                    existing.add((await self.read_descriptor(entry)).name)
                except SourceUnavailable:
                    pass

        if base_name not in existing and sanitize_filename(base_name) not in existing:
            return base_name
        for i in range(1, 100):
            name = f'{base_name} ({i})'
            if name not in existing and sanitize_filename(name) not in existing:
                return name
        return f'{base_name}-{uuid.uuid4().hex[:8]}'

    async def apply_package(self, package_path: Path, manifest: Manifest,
                            name: Optional[str] = None) -> Path:
        """Extract a verified package into a new instance directory.

        Entries are extracted into a hidden staging directory that is renamed
        into place only once the whole package and `instance.json` are
        written. On failure the staging directory is removed.
        """
        instance_name = await self.unique_name(name or manifest.instance.name)
        instance_dir = self.instances_dir / sanitize_filename(instance_name)
        staging_dir = self.instances_dir / f'.{instance_dir.name}.{uuid.uuid4().hex[:8]}.part'

        def extract():
            with zipfile.ZipFile(package_path) as archive:
                for member in archive.infolist():
                    if member.filename == MANIFEST_ENTRY:
                        continue
                    if not is_safe_member(member.filename):
                        logger.warning(f'Skipping unsafe package entry: {member.filename}')
                        continue
                    target = staging_dir / member.filename
                    if member.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with archive.open(member) as src, open(target, 'wb') as dst:
                        shutil.copyfileobj(src, dst, 1024 * 1024)

        descriptor = manifest.instance
        metadata = {
            'name': instance_name,
            'game_version': descriptor.game_version,
            'loader': descriptor.loader_kind,
            'loader_version': descriptor.loader_version,
            'is_server': descriptor.is_server,
            'is_proxy': descriptor.is_proxy,
        }

        committed = False
        try:
            await aiofiles.os.makedirs(staging_dir)
            await asyncio.to_thread(extract)
            async with aiofiles.open(staging_dir / METADATA_FILE, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(metadata, indent=2))
            await aiofiles.os.rename(staging_dir, instance_dir)
            committed = True
        except zipfile.BadZipFile as e:
            raise ChecksumMismatch(f'Package archive is invalid: {e}') from e
        except OSError as e:
            error = translate_os_error(e)
            if isinstance(error, SourceUnavailable):
                # Anything but disk space or permissions means the package itself is broken
                error = ChecksumMismatch(f'Package could not be extracted: {e}')
            raise error from e
        finally:
            if not committed:
                await asyncio.to_thread(shutil.rmtree, staging_dir, True)

        logger.info(f'Imported instance {instance_name!r} into {instance_dir}')
        return instance_dir
