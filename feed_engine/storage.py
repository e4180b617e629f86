"""Key-value persistence used for cache snapshots and statistics."""
from __future__ import annotations

import asyncio
import dataclasses
import json
import math
import re
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

from loguru import logger

from .exceptions import PersistenceError

CACHE_ENTRIES_KEY = "cache.entries"
CACHE_STATS_KEY = "cache.stats"
CACHE_CONFIG_KEY = "cache.config"
PRELOADER_STATS_KEY = "preloader.stats"


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        ...

    async def set(self, key: str, value: bytes) -> None:  # pragma: no cover - interface
        ...

    async def delete(self, key: str) -> None:  # pragma: no cover - interface
        ...


class MemoryStore:
    """Process-local store. Nothing survives a restart."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class FileStore:
    """
    One file per key under `directory`.

    Writes go to a temporary file first and are then renamed into place, so a
    crash mid-write leaves the previous value intact.
    """

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE.sub('_', key)}.json"

    async def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Failed to read {path} ({e})") from e

    async def set(self, key: str, value: bytes) -> None:
        path = self._path(key)

        def _write() -> None:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(value)
            tmp.replace(path)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise PersistenceError(f"Failed to write {path} ({e})") from e

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise PersistenceError(f"Failed to delete {path} ({e})") from e


class DebouncedWriter:
    """
    Coalesce bursts of `schedule()` calls into a single awaited `callback`.

    The write runs `delay` seconds after the most recent `schedule()`. Calls made
    outside a running event loop only mark the writer dirty; the next `flush()`
    (or the next scheduled write) picks them up.
    """

    def __init__(self, callback: Callable[[], Awaitable[None]], delay: float = 1.0) -> None:
        self._callback = callback
        self.delay = delay
        self._dirty = False
        self._due = 0.0
        self._task: Optional[asyncio.Task] = None

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> None:
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._due = loop.time() + self.delay
        if not self.pending:
            self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while self._dirty:
            wait = self._due - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
                continue
            try:
                await self.flush()
            except Exception:
                # Nobody awaits this task; make sure the failure is visible.
                logger.exception("Debounced write failed")

    async def flush(self) -> None:
        if not self._dirty:
            return
        self._dirty = False
        await self._callback()

    async def cancel(self) -> None:
        """Drop the pending write, if any."""
        self._dirty = False
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def _json_default(obj: Any) -> Any:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def dumps(obj: Any) -> bytes:
    """Compact UTF-8 JSON. Dataclasses, datetimes and enums are encoded too."""
    return json.dumps(obj, default=_json_default, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


async def load_json(store: KeyValueStore, key: str) -> Optional[Any]:
    """Read and decode `key`. Any store or decode failure becomes a PersistenceError."""
    try:
        raw = await store.get(key)
    except PersistenceError:
        raise
    except Exception as e:
        raise PersistenceError(f"Failed to read {key} ({e})") from e
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError as e:
        raise PersistenceError(f"Corrupt value under {key} ({e})") from e


async def save_json(store: KeyValueStore, key: str, value: Any) -> None:
    try:
        await store.set(key, dumps(value))
    except PersistenceError:
        raise
    except Exception as e:
        raise PersistenceError(f"Failed to write {key} ({e})") from e


def as_count(value: Any) -> int:
    """A persisted counter: a non-negative int (bools rejected)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected a count, got {value!r}")
    if value < 0:
        raise ValueError(f"expected a count, got {value!r}")
    return value


def as_number(value: Any, *, optional: bool = False) -> Optional[float]:
    """A persisted non-negative finite number, or None when `optional`."""
    if value is None and optional:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"expected a number, got {value!r}")
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"expected a non-negative number, got {value!r}")
    return float(value)
