"""
Progress Ledger

A sidecar record of how many bytes a transfer believes it has moved,
kept next to the target file:

```
report.pdf                 # target file
report.pdf.progress        # "40960\n"
report.pdf.progress.tmp    # exists only during a rewrite
```

Every update rewrites the whole record to the temporary path, fsyncs it
and renames it over the old record, so a reader sees either the old
value or the new one, never a partial write.

The ledger is a recovery hint. The target file's own length is the
authoritative measure of local progress.
"""

import logging
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from .storage import fsync_file

logger = logging.getLogger(__name__)

LEDGER_SUFFIX = '.progress'
TMP_SUFFIX = '.tmp'


class ProgressLedger:
    """
    Atomic per-file progress records.

    One driver owns a given file's record for the duration of a
    transfer attempt, so no locking is done here.
    """

    def __init__(self, suffix: str = LEDGER_SUFFIX, tmp_suffix: str = TMP_SUFFIX):
        self.suffix = suffix
        self.tmp_suffix = tmp_suffix

    def path_for(self, target: Path) -> Path:
        """Ledger path for a target file."""
        target = Path(target)
        return target.with_name(target.name + self.suffix)

    def tmp_path_for(self, target: Path) -> Path:
        ledger = self.path_for(target)
        return ledger.with_name(ledger.name + self.tmp_suffix)

    async def record(self, target: Path, bytes_so_far: int):
        """
        Durably record progress for a target file.

        Raises:
            OSError: if the record could not be written; the previous
                record (if any) is left in place
        """
        path = self.path_for(target)
        tmp_path = self.tmp_path_for(target)

        try:
            async with aiofiles.open(tmp_path, 'w') as f:
                await f.write(f"{bytes_so_far}\n")
                await f.flush()
                await fsync_file(f)
            await aiofiles.os.replace(tmp_path, path)
        except OSError:
            if await aiofiles.os.path.exists(tmp_path):
                await aiofiles.os.remove(tmp_path)
            raise

    async def read(self, target: Path) -> Optional[int]:
        """
        Read the recorded progress.

        Returns:
            Bytes recorded, or None if there is no usable record
        """
        path = self.path_for(target)
        try:
            async with aiofiles.open(path, 'rb') as f:
                content = await f.read()
        except FileNotFoundError:
            return None

        try:
            # UnicodeDecodeError is a ValueError
            value = int(content.decode('ascii').strip())
        except ValueError:
            logger.warning(f"Ignoring unreadable progress record {path}")
            return None
        if value < 0:
            logger.warning(f"Ignoring negative progress record {path}")
            return None
        return value

    async def clear(self, target: Path):
        """Remove the record (and any leftover temporary) for a target file."""
        for path in (self.path_for(target), self.tmp_path_for(target)):
            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                pass
