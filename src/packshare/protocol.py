import hashlib
import hmac
import os
import uuid
from dataclasses import dataclass
from typing import Union

import aiofiles

CHUNK_SIZE = 64 * 1024  # 64KB chunks
MANIFEST_ENTRY = 'packshare-manifest.json'
PACKAGE_EXTENSION = '.kaizen'
ACCESS_TOKEN_BYTES = 32  # 256-bit token

MANIFEST_ROUTE = '/manifest'
DOWNLOAD_ROUTE = '/download'
DOWNLOAD_ROUTES = ('/', DOWNLOAD_ROUTE, '/instance' + PACKAGE_EXTENSION)
CHECKSUM_HEADER = 'X-Package-SHA256'


# Transport events consumed by the download accumulator

@dataclass(frozen=True)
class Started:
    content_length: int


@dataclass(frozen=True)
class Progress:
    chunk_length: int


@dataclass(frozen=True)
class Finished:
    pass


TransferEvent = Union[Started, Progress, Finished]


def generate_export_id() -> str:
    """Generate an opaque, unique export id."""
    return uuid.uuid4().hex


def generate_access_token() -> str:
    """Generate the secret path segment appended to a public URL."""
    return os.urandom(ACCESS_TOKEN_BYTES).hex()


def validate_token(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode(), expected.encode())


async def calculate_file_hash(path, chunk_size: int = CHUNK_SIZE) -> str:
    """Calculate the SHA256 hex digest of a file."""
    digest = hashlib.sha256()
    async with aiofiles.open(path, 'rb') as f:
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()
