"""
Manifest model and the data types exchanged around an export.

The manifest is the header document of every package: it describes the
source instance, which content categories were included and how many bytes
each contributed.
"""

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import MalformedManifest

FORMAT_VERSION = '1.0'
SUPPORTED_FORMAT_VERSIONS = frozenset({FORMAT_VERSION})
CATEGORIES = ('mods', 'config', 'resourcepacks', 'shaderpacks')


@dataclass(frozen=True)
class InstanceDescriptor:
    name: str
    game_version: str
    loader_kind: Optional[str] = None
    loader_version: Optional[str] = None
    is_server: bool = False
    is_proxy: bool = False


@dataclass(frozen=True)
class ContentSection:
    included: bool = False
    count: int = 0
    size_bytes: int = 0


@dataclass(frozen=True)
class WorldEntry:
    name: str
    size_bytes: int = 0
    # Server dimension folders packaged alongside the main world
    additional_folders: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SavesSection:
    included: bool = False
    worlds: Tuple[WorldEntry, ...] = ()

    @property
    def world_names(self) -> List[str]:
        return [w.name for w in self.worlds]

    @property
    def size_bytes(self) -> int:
        return sum(w.size_bytes for w in self.worlds)


@dataclass(frozen=True)
class Manifest:
    format_version: str
    producer_version: str
    created_at: str
    instance: InstanceDescriptor
    mods: ContentSection = ContentSection()
    config: ContentSection = ContentSection()
    resourcepacks: ContentSection = ContentSection()
    shaderpacks: ContentSection = ContentSection()
    saves: SavesSection = SavesSection()
    total_size_bytes: int = 0

    def section(self, category: str) -> ContentSection:
        if category not in CATEGORIES:
            raise KeyError(category)
        return getattr(self, category)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['saves']['worlds'] = [
            {**w, 'additional_folders': list(w['additional_folders'])}
            for w in data['saves']['worlds']
        ]
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Manifest':
        """Build a manifest from its header document.

        Structural problems (missing keys, wrong types) raise
        MalformedManifest; semantic checks are left to `validate`.
        """
        if not isinstance(data, dict):
            raise MalformedManifest('Manifest must be a JSON object')
        try:
            instance = InstanceDescriptor(**data['instance'])
            sections = {
                name: ContentSection(**data[name]) for name in CATEGORIES
            }
            saves_data = data['saves']
            worlds = tuple(
                WorldEntry(
                    name=w['name'],
                    size_bytes=w.get('size_bytes', 0),
                    additional_folders=tuple(w.get('additional_folders') or ()),
                )
                for w in saves_data['worlds']
            )
            return cls(
                format_version=data['format_version'],
                producer_version=data['producer_version'],
                created_at=data['created_at'],
                instance=instance,
                saves=SavesSection(included=saves_data['included'], worlds=worlds),
                total_size_bytes=data['total_size_bytes'],
                **sections,
            )
        except KeyError as e:
            raise MalformedManifest(f'Manifest is missing field {e}')
        except (TypeError, AttributeError) as e:
            raise MalformedManifest(f'Manifest has an unexpected shape: {e}')

    @classmethod
    def from_json(cls, text) -> 'Manifest':
        try:
            data = json.loads(text)
        except ValueError as e:
            raise MalformedManifest(f'Manifest is not valid JSON: {e}')
        return cls.from_dict(data)


def _is_count(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def validate(manifest: Manifest) -> Manifest:
    """Check a manifest against the schema invariants.

    Returns the manifest unchanged, or raises MalformedManifest when the
    format version is unsupported or a count/size invariant is broken.
    """
    if manifest.format_version not in SUPPORTED_FORMAT_VERSIONS:
        raise MalformedManifest(
            f'Unsupported manifest format version: {manifest.format_version!r}. '
            f'Expected one of: {", ".join(sorted(SUPPORTED_FORMAT_VERSIONS))}'
        )
    if not manifest.instance.name:
        raise MalformedManifest('Manifest instance has no name')

    measured = 0
    for name in CATEGORIES:
        section = manifest.section(name)
        if not isinstance(section.included, bool):
            raise MalformedManifest(f'{name}.included must be a boolean')
        if not _is_count(section.count) or not _is_count(section.size_bytes):
            raise MalformedManifest(f'{name} count and size must be non-negative integers')
        if not section.included:
            if section.count or section.size_bytes:
                raise MalformedManifest(f'{name} is excluded but reports content')
            continue
        measured += section.size_bytes

    saves = manifest.saves
    if not saves.included and saves.worlds:
        raise MalformedManifest('saves is excluded but lists worlds')
    if saves.included and not saves.worlds:
        raise MalformedManifest('saves is included but lists no worlds')
    names = saves.world_names
    if len(set(names)) != len(names):
        raise MalformedManifest('saves lists the same world twice')
    for world in saves.worlds:
        if not world.name or not _is_count(world.size_bytes):
            raise MalformedManifest(f'Invalid world entry: {world!r}')
    measured += saves.size_bytes

    if not _is_count(manifest.total_size_bytes):
        raise MalformedManifest('total_size_bytes must be a non-negative integer')
    if manifest.total_size_bytes != measured:
        raise MalformedManifest(
            f'total_size_bytes is {manifest.total_size_bytes} but included '
            f'content measures {measured} bytes'
        )
    return manifest


@dataclass
class ExportOptions:
    include_mods: bool = True
    include_config: bool = True
    include_resourcepacks: bool = False
    include_shaderpacks: bool = False
    # World folder names to include (empty = none)
    include_worlds: List[str] = field(default_factory=list)

    def includes(self, category: str) -> bool:
        return bool(getattr(self, f'include_{category}'))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExportOptions':
        return cls(
            include_mods=bool(data.get('include_mods', True)),
            include_config=bool(data.get('include_config', True)),
            include_resourcepacks=bool(data.get('include_resourcepacks', False)),
            include_shaderpacks=bool(data.get('include_shaderpacks', False)),
            include_worlds=list(data.get('include_worlds') or []),
        )


@dataclass(frozen=True)
class SourceFile:
    """A file captured by a content scan, with its path inside the package."""
    path: Path
    arcname: str
    size_bytes: int


@dataclass(frozen=True)
class ExportableSection:
    available: bool = False
    count: int = 0
    size_bytes: int = 0
    files: Tuple[SourceFile, ...] = ()


@dataclass(frozen=True)
class ExportableWorld:
    name: str
    folder_name: str
    size_bytes: int
    is_server_world: bool = False
    additional_folders: Tuple[str, ...] = ()
    files: Tuple[SourceFile, ...] = ()


@dataclass(frozen=True)
class ExportableContent:
    """What an instance offered at the moment it was scanned."""
    instance_id: str
    instance: InstanceDescriptor
    mods: ExportableSection = ExportableSection()
    config: ExportableSection = ExportableSection()
    resourcepacks: ExportableSection = ExportableSection()
    shaderpacks: ExportableSection = ExportableSection()
    worlds: Tuple[ExportableWorld, ...] = ()

    @property
    def instance_name(self) -> str:
        return self.instance.name

    def section(self, category: str) -> ExportableSection:
        if category not in CATEGORIES:
            raise KeyError(category)
        return getattr(self, category)

    def world(self, name: str) -> Optional[ExportableWorld]:
        for world in self.worlds:
            if world.folder_name == name:
                return world
        return None


@dataclass(frozen=True)
class PreparedExport:
    export_id: str
    package_path: Path
    manifest: Manifest

    def to_dict(self) -> Dict[str, Any]:
        return {
            'export_id': self.export_id,
            'package_path': str(self.package_path),
            'manifest': self.manifest.to_dict(),
        }
