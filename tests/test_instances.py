"""
Tests for the filesystem instance provider.
"""

import json
import zipfile

import pytest

from packshare.errors import ChecksumMismatch, ManifestInvalid, SourceUnavailable
from packshare.instances import (
    LocalInstanceProvider, content_folder, is_safe_member, read_package_manifest, sanitize_filename,
)
from packshare.manifest import InstanceDescriptor, Manifest
from packshare.protocol import MANIFEST_ENTRY

from conftest import INSTANCE_ID, write_file


@pytest.fixture
def server_instance(instances_dir):
    instance = instances_dir / 'smp'
    instance.mkdir()
    (instance / 'instance.json').write_text(json.dumps({
        'name': 'SMP', 'game_version': '1.20.4', 'loader': 'paper', 'is_server': True,
    }))
    write_file(instance / 'plugins' / 'essentials.jar', 700)
    write_file(instance / 'world' / 'level.dat', 100)
    write_file(instance / 'world_nether' / 'level.dat', 40)
    write_file(instance / 'resourcepacks' / 'ignored.zip', 10)
    return 'smp'


class TestExportableContent:
    """Tests for scanning an instance directory."""

    async def test_client_instance(self, provider):
        content = await provider.exportable_content(INSTANCE_ID)

        assert content.instance.name == 'My Pack'
        assert content.instance.loader_kind == 'fabric'
        assert content.mods.available and content.mods.count == 2
        assert content.mods.size_bytes == 3500
        assert content.config.count == 2 and content.config.size_bytes == 150
        assert content.resourcepacks.count == 1
        assert not content.shaderpacks.available
        assert [w.folder_name for w in content.worlds] == ['World1', 'World2']
        assert content.world('World1').size_bytes == 2112

    async def test_server_instance(self, provider, server_instance):
        content = await provider.exportable_content(server_instance)

        assert content.instance.is_server
        assert content.mods.count == 1
        assert content.mods.files[0].arcname == 'plugins/essentials.jar'
        assert not content.resourcepacks.available
        world = content.world('world')
        assert world.is_server_world
        assert world.additional_folders == ('world_nether',)
        assert world.size_bytes == 140

    async def test_missing_instance(self, provider):
        with pytest.raises(SourceUnavailable):
            await provider.exportable_content('nope')

    async def test_broken_descriptor(self, provider, instances_dir):
        (instances_dir / 'broken').mkdir()
        (instances_dir / 'broken' / 'instance.json').write_text('{oops')
        with pytest.raises(SourceUnavailable):
            await provider.read_descriptor('broken')


class TestApplyPackage:
    """Tests for reconstructing an instance from a package."""

    def manifest(self, name='Imported'):
        return Manifest(
            format_version='1.0', producer_version='0.1.0', created_at='2024-05-01T00:00:00+00:00',
            instance=InstanceDescriptor(name=name, game_version='1.19.2', loader_kind='forge'),
        )

    async def test_unsafe_entries_are_skipped(self, provider, instances_dir, tmp_path):
        package = tmp_path / 'evil.kaizen'
        with zipfile.ZipFile(package, 'w') as archive:
            archive.writestr('mods/ok.jar', b'ok')
            archive.writestr('../escape.txt', b'nope')
            archive.writestr('/abs.txt', b'nope')
            archive.writestr(MANIFEST_ENTRY, self.manifest().to_json())

        instance_dir = await provider.apply_package(package, self.manifest())

        assert (instance_dir / 'mods' / 'ok.jar').read_bytes() == b'ok'
        assert not (instances_dir / 'escape.txt').exists()
        assert not (instance_dir / MANIFEST_ENTRY).exists()
        metadata = json.loads((instance_dir / 'instance.json').read_text())
        assert metadata == {
            'name': 'Imported', 'game_version': '1.19.2', 'loader': 'forge',
            'loader_version': None, 'is_server': False, 'is_proxy': False,
        }

    async def test_failed_extraction_leaves_nothing_behind(self, provider, instances_dir, tmp_path):
        package = tmp_path / 'conflict.kaizen'
        with zipfile.ZipFile(package, 'w') as archive:
            archive.writestr('mods/a.jar', b'file')
            archive.writestr('mods/a.jar/b', b'file under a file')
            archive.writestr(MANIFEST_ENTRY, self.manifest('Broken').to_json())
        before = sorted(p.name for p in instances_dir.iterdir())

        with pytest.raises(ChecksumMismatch):
            await provider.apply_package(package, self.manifest('Broken'))

        assert sorted(p.name for p in instances_dir.iterdir()) == before

    async def test_not_a_zip(self, provider, instances_dir, tmp_path):
        package = tmp_path / 'junk.kaizen'
        package.write_bytes(b'not a zip at all')
        before = sorted(p.name for p in instances_dir.iterdir())

        with pytest.raises(ChecksumMismatch):
            await provider.apply_package(package, self.manifest())

        assert sorted(p.name for p in instances_dir.iterdir()) == before

    async def test_unique_name(self, provider):
        assert await provider.unique_name('Fresh') == 'Fresh'
        assert await provider.unique_name('My Pack') == 'My Pack (1)'
        assert await provider.unique_name(INSTANCE_ID) == f'{INSTANCE_ID} (1)'

    async def test_empty_instances_dir(self, tmp_path):
        provider = LocalInstanceProvider(tmp_path / 'fresh')
        assert await provider.unique_name('Anything') == 'Anything'


class TestHelpers:
    def test_content_folder(self):
        assert content_folder('fabric') == 'mods'
        assert content_folder('Paper') == 'plugins'
        assert content_folder(None) == 'mods'

    def test_sanitize_filename(self):
        assert sanitize_filename('My Pack: Deluxe') == 'my-pack-deluxe'
        assert sanitize_filename('///') == 'instance'

    @pytest.mark.parametrize('name, safe', [
        ('mods/a.jar', True),
        ('saves/World1/level.dat', True),
        ('../x', False),
        ('mods/../../x', False),
        ('/etc/passwd', False),
        ('C:/Windows', False),
        ('', False),
    ])
    def test_is_safe_member(self, name, safe):
        assert is_safe_member(name) is safe


class TestReadPackageManifest:
    async def test_reads_embedded_manifest(self, prepared):
        assert await read_package_manifest(prepared.package_path) == prepared.manifest

    async def test_missing_package(self, tmp_path):
        with pytest.raises(SourceUnavailable):
            await read_package_manifest(tmp_path / 'nope.kaizen')

    async def test_zip_without_manifest(self, tmp_path):
        package = tmp_path / 'plain.zip'
        with zipfile.ZipFile(package, 'w') as archive:
            archive.writestr('mods/a.jar', b'a')
        with pytest.raises(ManifestInvalid, match='Missing'):
            await read_package_manifest(package)

    async def test_not_a_zip(self, tmp_path):
        package = tmp_path / 'junk.kaizen'
        package.write_bytes(b'junk')
        with pytest.raises(ManifestInvalid):
            await read_package_manifest(package)
