"""
Received File Storage

Nothing is persisted while a transfer is in flight: chunks live in the
Assembler's memory until the file is complete. This module only writes
the finished file to the download directory.

Storage Layout:
```
downloads/
├── report.pdf
├── report (1).pdf      # name collision
└── photo.jpg
```
"""

import logging
from pathlib import Path

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


def safe_file_name(file_name: str) -> str:
    """
    Strip directory components and unsafe characters from a peer-supplied name.

    A peer controls the name, so "../../etc/passwd" must not escape the
    download directory.
    """
    name = Path(file_name.replace('\\', '/')).name
    name = ''.join(c for c in name if c.isprintable() and c not in '<>:"|?*')
    name = name.strip().lstrip('.')
    return name or "received.bin"


def unique_path(directory: Path, file_name: str) -> Path:
    """Return directory/file_name, adding ' (n)' before the suffix on collision."""
    candidate = directory / file_name
    if not candidate.exists():
        return candidate

    stem = candidate.stem
    suffix = candidate.suffix
    n = 1
    while True:
        candidate = directory / f"{stem} ({n}){suffix}"
        if not candidate.exists():
            return candidate
        n += 1


async def save_received_file(data: bytes, file_name: str, directory: Path) -> Path:
    """
    Write a received file into `directory`.

    Returns:
        Path the file was written to
    """
    directory = Path(directory)
    await aiofiles.os.makedirs(directory, exist_ok=True)

    path = unique_path(directory, safe_file_name(file_name))
    temp_path = path.with_name(path.name + '.part')

    async with aiofiles.open(temp_path, 'wb') as f:
        await f.write(data)

    await aiofiles.os.rename(temp_path, path)
    logger.info(f"Saved {path.name} ({len(data):,} bytes) to {directory}")
    return path
