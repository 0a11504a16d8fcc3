"""
Keyed record tables with an optional JSON file behind them.

Without a path a table is a plain in-memory dict. With a path, every
change re-reads the file, applies the change and writes the file back
atomically while holding a file lock, and every read re-reads the file.
Processes sharing the file therefore see one table.
"""

from typing import Any, Callable, Dict, Optional
from pathlib import Path
import asyncio
import json
import logging

from filelock import FileLock

from durableflow.storage.atomic import atomic_write


logger = logging.getLogger(__name__)


class JsonTable:
    """
    Base class for the definition and suspension stores.

    Subclasses implement ``encode`` / ``decode`` for their record type and
    go through ``_read`` and ``_write`` for every access.
    """

    LOCK_TIMEOUT = 30

    def __init__(self, path: Optional[Any] = None):
        self._records: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self.path = Path(path) if path else None
        if self.path is not None:
            self._load()
            if self._records:
                logger.info(f"Loaded {len(self._records)} records from {self.path}")

    def encode(self, record: Any) -> Dict[str, Any]:
        raise NotImplementedError

    def decode(self, raw: Dict[str, Any]) -> Any:
        raise NotImplementedError

    def _load(self) -> None:
        if not self.path.exists():
            self._records = {}
            return
        raw = json.loads(self.path.read_text() or "{}")
        self._records = {key: self.decode(item) for key, item in raw.items()}

    def _dump(self) -> None:
        payload = json.dumps(
            {key: self.encode(record) for key, record in self._records.items()},
            indent=2,
            default=str,
        )
        with atomic_write(self.path) as f:
            f.write(payload)

    def _apply(self, change: Callable[[Dict[str, Any]], Any]) -> Any:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(f"{self.path}.lock", timeout=self.LOCK_TIMEOUT):
            self._load()
            result = change(self._records)
            self._dump()
            return result

    async def _write(self, change: Callable[[Dict[str, Any]], Any]) -> Any:
        """Apply ``change`` to the records and persist them."""
        async with self._lock:
            if self.path is None:
                return change(self._records)
            return await asyncio.to_thread(self._apply, change)

    async def _read(self) -> Dict[str, Any]:
        """A snapshot of the records."""
        async with self._lock:
            if self.path is not None:
                await asyncio.to_thread(self._load)
            return dict(self._records)

    def __len__(self) -> int:
        return len(self._records)
