"""
File Storage

Design Decision: Where the Responder Keeps Files
================================================

Options Considered:
1. Use the requested filename as a path relative to the working directory
   - Simplest
   - A request for "../../etc/passwd" or "/etc/passwd" escapes

2. Flat directory keyed by base name only
   - Safe, but drops any sub-directory structure the client asked for

3. Root directory with confined relative paths
   - Keeps sub-directories, rejects anything that resolves outside the root

Decision: Root directory with confined relative paths
- Absolute names and names that resolve outside the root are rejected
- Parent directories are created on first write

Storage Layout:
```
root/
├── report.pdf            # Canonical copy (possibly partial during upload)
└── photos/
    └── cat.jpg
```
Progress ledgers live next to the file they describe on the initiator
side (see ledger.py); the responder keeps none.
"""

import asyncio
import os
from pathlib import Path, PurePosixPath, PureWindowsPath

import aiofiles


def file_size(path: Path) -> int:
    """Size of a file on disk, 0 if it does not exist."""
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return 0


def open_for_resume(path: Path):
    """
    Open a file for reading and writing at arbitrary offsets.

    Existing content is kept; the file is created if missing.
    Use as `async with open_for_resume(path) as f:`.
    """
    mode = 'r+b' if path.exists() else 'w+b'
    return aiofiles.open(path, mode)


async def fsync_file(f):
    """Force a flushed file's contents to durable storage."""
    await asyncio.get_running_loop().run_in_executor(None, os.fsync, f.fileno())


class FileStore:
    """
    The responder's canonical file copies, confined to one directory.
    """

    def __init__(self, root_dir: Path):
        """
        Initialize file storage.

        Args:
            root_dir: Directory every requested filename is resolved under
        """
        self.root_dir = Path(root_dir).resolve()
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def resolve(self, filename: str) -> Path:
        """
        Map a requested filename to a path under the root directory.

        Raises:
            ValueError: if the name is absolute or escapes the root
        """
        if PurePosixPath(filename).is_absolute() or PureWindowsPath(filename).is_absolute():
            raise ValueError(f"Absolute filename not allowed: {filename!r}")
        if PureWindowsPath(filename).drive:
            raise ValueError(f"Drive-qualified filename not allowed: {filename!r}")

        path = (self.root_dir / filename).resolve()
        if path == self.root_dir or self.root_dir not in path.parents:
            raise ValueError(f"Filename escapes storage root: {filename!r}")
        return path
