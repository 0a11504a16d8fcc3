"""
Crash-safe file writes: write to a temp file in the same directory,
fsync, then rename over the target.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator, Union
import os
import tempfile


@contextmanager
def atomic_write(path: Union[str, Path], mode: str = "w", encoding: str = "utf-8") -> Iterator[IO]:
    """
    Open a temp file that replaces ``path`` only if the block succeeds.

    Usage:
        with atomic_write(path) as f:
            f.write(data)
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, mode, encoding=encoding) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
