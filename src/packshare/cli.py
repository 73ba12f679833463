"""
Command line front end for sharing instances.

Usage:
    python -m packshare export ~/instances my-pack --world "New World"
    python -m packshare seed ~/instances my-pack --provider edge
    python -m packshare manifest http://bore.pub:41234/<token>
    python -m packshare download http://bore.pub:41234/<token> ~/instances
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from .backend import SharingBackend
from .config import SharingConfig
from .errors import SharingError
from .instances import LocalInstanceProvider
from .manifest import ExportOptions
from .progress import SharingProgress

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def export_options(args: argparse.Namespace) -> ExportOptions:
    return ExportOptions(
        include_mods=not args.no_mods,
        include_config=not args.no_config,
        include_resourcepacks=args.resourcepacks,
        include_shaderpacks=args.shaderpacks,
        include_worlds=list(args.world or []),
    )


def make_backend(instances_dir) -> SharingBackend:
    backend = SharingBackend(SharingConfig.from_env(), LocalInstanceProvider(instances_dir))
    backend.progress.subscribe(print_progress)
    return backend


def print_progress(progress: SharingProgress) -> None:
    print(f'[{progress.stage.value:>12}] {progress.progress:3d}% {progress.message}')


async def cmd_export(args: argparse.Namespace) -> int:
    backend = make_backend(args.instances_dir)
    prepared = await backend.prepare_export(args.instance, export_options(args))
    print(json.dumps(prepared.to_dict(), indent=2))
    return 0


async def cmd_seed(args: argparse.Namespace) -> int:
    backend = make_backend(args.instances_dir)
    await backend.start()
    prepared = await backend.prepare_export(args.instance, export_options(args))
    try:
        session = await backend.start_seed(prepared.export_id, args.provider, args.port)
        print(f'\nSharing {session.instance_name} at:\n  {session.public_url}\n')
        print('Press Ctrl+C to stop...')
        while True:
            await asyncio.sleep(1)
    finally:
        await backend.shutdown()
        await backend.cleanup_export(prepared.export_id)


async def cmd_manifest(args: argparse.Namespace) -> int:
    backend = make_backend('.')
    manifest = await backend.fetch_share_manifest(args.url)
    print(manifest.to_json())
    return 0


async def cmd_download(args: argparse.Namespace) -> int:
    backend = make_backend(args.instances_dir)
    instance_dir = await backend.download_and_import(args.url, args.name)
    print(f'Imported into {instance_dir}')
    return 0


async def cmd_import(args: argparse.Namespace) -> int:
    backend = make_backend(args.instances_dir)
    instance_dir = await backend.import_package(args.package, args.name)
    print(f'Imported into {instance_dir}')
    return 0


def add_export_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('instances_dir', type=Path, help='Directory holding instances')
    parser.add_argument('instance', help='Instance folder name')
    parser.add_argument('--no-mods', action='store_true', help='Leave out mods/plugins')
    parser.add_argument('--no-config', action='store_true', help='Leave out config files')
    parser.add_argument('--resourcepacks', action='store_true', help='Include resource packs')
    parser.add_argument('--shaderpacks', action='store_true', help='Include shader packs')
    parser.add_argument('--world', action='append', metavar='NAME', help='Include a world (repeatable)')


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description='Share game instances peer-to-peer',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    export_parser = subparsers.add_parser('export', help='Build a package without seeding it')
    add_export_arguments(export_parser)
    export_parser.set_defaults(func=cmd_export)

    seed_parser = subparsers.add_parser('seed', help='Build a package and seed it until interrupted')
    add_export_arguments(seed_parser)
    seed_parser.add_argument('--provider', choices=['relay', 'edge'], help='Tunnel provider')
    seed_parser.add_argument('--port', type=int, default=0, help='Local port (default: any free port)')
    seed_parser.set_defaults(func=cmd_seed)

    manifest_parser = subparsers.add_parser('manifest', help="Show a share's manifest")
    manifest_parser.add_argument('url', help='Share URL')
    manifest_parser.set_defaults(func=cmd_manifest)

    download_parser = subparsers.add_parser('download', help='Download and import a share')
    download_parser.add_argument('url', help='Share URL')
    download_parser.add_argument('instances_dir', type=Path, help='Directory to import into')
    download_parser.add_argument('--name', help='Name for the imported instance')
    download_parser.set_defaults(func=cmd_download)

    import_parser = subparsers.add_parser('import', help='Import a package file from disk')
    import_parser.add_argument('package', type=Path, help='Path to a .kaizen package')
    import_parser.add_argument('instances_dir', type=Path, help='Directory to import into')
    import_parser.add_argument('--name', help='Name for the imported instance')
    import_parser.set_defaults(func=cmd_import)

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        print('\nStopping...')
        return 0
    except SharingError as e:
        logger.error(str(e))
        return 1


if __name__ == '__main__':
    sys.exit(main())
