"""On-disk persistence for checkpoints.

Layout under ``<base>/checkpoints``::

    metadata.json                              index document
    2025-01-31/checkpoint-<id>.json            checkpoint record
    2025-01-02/checkpoint-<id>.json.gz         compressed record

Every file is written to a temporary sibling first and moved into place, so
readers never observe a partial record or index.  The index is updated by
one writer at a time.
"""

from __future__ import annotations

import asyncio
import gzip
import json
import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import CheckpointError, CheckpointNotFoundError
from .types import Checkpoint, CheckpointFilter, CheckpointInfo, CheckpointStats

__all__ = ["CheckpointStorage"]

LOGGER = logging.getLogger(__name__)

_INDEX_NAME = "metadata.json"
_RECORD_PREFIX = "checkpoint-"


@dataclass(slots=True)
class _Index:
    checkpoints: dict[str, CheckpointInfo] = field(default_factory=dict)
    next_sequence: int = 1

    def to_dict(self) -> dict[str, Any]:
        infos = sorted(self.checkpoints.values(), key=lambda info: info.sequence)
        return {
            "checkpoints": [info.to_dict() for info in infos],
            "stats": CheckpointStats.from_infos(infos).to_dict(),
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
            "nextSequence": self.next_sequence,
        }


class CheckpointStorage:
    """Reads and writes checkpoint records plus the index document.

    Disk I/O runs in worker threads; index mutations are serialized with an
    asyncio lock and always persisted before the lock is released.
    """

    def __init__(self, base_dir: Path | str) -> None:
        self._root = Path(base_dir).expanduser() / "checkpoints"
        self._index_path = self._root / _INDEX_NAME
        self._index_lock = asyncio.Lock()
        self._index: _Index | None = None

    @property
    def root(self) -> Path:
        return self._root

    async def initialize(self) -> None:
        async with self._index_lock:
            await self._ensure_index()

    # ------------------------------------------------------------------
    # Sequence
    # ------------------------------------------------------------------
    async def allocate_sequence(self) -> int:
        """Reserve the next checkpoint sequence number (persisted)."""

        async with self._index_lock:
            index = await self._ensure_index()
            sequence = index.next_sequence
            index.next_sequence += 1
            await self._write_index(index)
            return sequence

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    async def save(self, checkpoint: Checkpoint) -> CheckpointInfo:
        body = json.dumps(checkpoint.to_dict(), ensure_ascii=False).encode("utf-8")
        path = self._record_path(checkpoint.id, checkpoint.timestamp, compressed=False)
        await asyncio.to_thread(_atomic_write, path, body)
        info = CheckpointInfo.from_checkpoint(checkpoint, size=len(body))
        async with self._index_lock:
            index = await self._ensure_index()
            index.checkpoints[info.id] = info
            index.next_sequence = max(index.next_sequence, checkpoint.sequence + 1)
            await self._write_index(index)
        LOGGER.debug("Saved checkpoint %s (%d bytes) to %s", checkpoint.id, len(body), path)
        return info

    async def load(self, checkpoint_id: str) -> Checkpoint:
        """Read a checkpoint record.

        Raises:
            CheckpointNotFoundError: No such checkpoint in the index or on disk.
            CheckpointError: The record exists but cannot be decoded.
        """

        info = await self.get_info(checkpoint_id)
        if info is None:
            raise CheckpointNotFoundError(checkpoint_id)
        path = self.record_path(info)
        try:
            payload = await asyncio.to_thread(_read_record, path, info.compressed)
        except FileNotFoundError as exc:
            raise CheckpointNotFoundError(checkpoint_id) from exc
        except (OSError, ValueError) as exc:
            raise CheckpointError(f"Checkpoint {checkpoint_id} is unreadable: {exc}") from exc
        return Checkpoint.from_dict(payload)

    async def delete(self, checkpoint_id: str) -> bool:
        async with self._index_lock:
            index = await self._ensure_index()
            info = index.checkpoints.pop(checkpoint_id, None)
            if info is None:
                return False
            await asyncio.to_thread(_unlink_quietly, self.record_path(info))
            await self._write_index(index)
        LOGGER.debug("Deleted checkpoint %s", checkpoint_id)
        return True

    async def compress(self, checkpoint_id: str) -> bool:
        """Gzip a stored record in place; returns ``False`` if already compressed."""

        info = await self.get_info(checkpoint_id)
        if info is None:
            raise CheckpointNotFoundError(checkpoint_id)
        if info.compressed:
            return False
        source = self.record_path(info)
        target = self._record_path(info.id, info.timestamp, compressed=True)
        size = await asyncio.to_thread(_gzip_file, source, target)
        async with self._index_lock:
            index = await self._ensure_index()
            if info.id in index.checkpoints:
                index.checkpoints[info.id] = replace(info, compressed=True, size=size)
                await self._write_index(index)
        await asyncio.to_thread(_unlink_quietly, source)
        LOGGER.debug("Compressed checkpoint %s (%d -> %d bytes)", checkpoint_id, info.size, size)
        return True

    # ------------------------------------------------------------------
    # Index queries
    # ------------------------------------------------------------------
    async def list(self, filter: CheckpointFilter | None = None) -> list[CheckpointInfo]:
        """Index entries, newest first."""

        async with self._index_lock:
            index = await self._ensure_index()
            infos = sorted(index.checkpoints.values(), key=lambda info: info.sequence, reverse=True)
        if filter is not None:
            infos = [info for info in infos if filter.matches(info)]
            if filter.limit is not None:
                infos = infos[: filter.limit]
        return infos

    async def get_info(self, checkpoint_id: str) -> CheckpointInfo | None:
        async with self._index_lock:
            index = await self._ensure_index()
            return index.checkpoints.get(checkpoint_id)

    async def stats(self) -> CheckpointStats:
        return CheckpointStats.from_infos(await self.list())

    def record_path(self, info: CheckpointInfo) -> Path:
        return self._record_path(info.id, info.timestamp, compressed=info.compressed)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _record_path(self, checkpoint_id: str, timestamp: datetime, *, compressed: bool) -> Path:
        suffix = ".json.gz" if compressed else ".json"
        day = timestamp.astimezone(timezone.utc).date().isoformat()
        return self._root / day / f"{_RECORD_PREFIX}{checkpoint_id}{suffix}"

    async def _ensure_index(self) -> _Index:
        if self._index is None:
            self._index = await asyncio.to_thread(self._load_index)
        return self._index

    def _load_index(self) -> _Index:
        if not self._index_path.exists():
            if self._root.exists():
                return self._rebuild_index()
            return _Index()
        try:
            payload = json.loads(self._index_path.read_text(encoding="utf-8"))
            infos = [CheckpointInfo.from_dict(item) for item in payload.get("checkpoints", ())]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            LOGGER.warning("Checkpoint index %s is unreadable (%s); rebuilding", self._index_path, exc)
            return self._rebuild_index()
        index = _Index(checkpoints={info.id: info for info in infos})
        highest = max((info.sequence for info in infos), default=0)
        index.next_sequence = max(int(payload.get("nextSequence", 1) or 1), highest + 1)
        return index

    def _rebuild_index(self) -> _Index:
        index = _Index()
        for path in sorted(self._root.glob(f"*/{_RECORD_PREFIX}*.json*")):
            compressed = path.name.endswith(".gz")
            try:
                checkpoint = Checkpoint.from_dict(_read_record(path, compressed))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                LOGGER.warning("Skipping unreadable checkpoint record %s: %s", path, exc)
                continue
            index.checkpoints[checkpoint.id] = CheckpointInfo.from_checkpoint(
                checkpoint, size=path.stat().st_size, compressed=compressed
            )
            index.next_sequence = max(index.next_sequence, checkpoint.sequence + 1)
        LOGGER.info("Rebuilt checkpoint index with %d record(s)", len(index.checkpoints))
        return index

    async def _write_index(self, index: _Index) -> None:
        body = json.dumps(index.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")
        await asyncio.to_thread(_atomic_write, self._index_path, body)


# -----------------------------------------------------------------------------
# Blocking helpers (run in worker threads)
# -----------------------------------------------------------------------------


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    tmp_path.write_bytes(data)
    os.replace(tmp_path, path)


def _read_record(path: Path, compressed: bool) -> dict[str, Any]:
    raw = path.read_bytes()
    if compressed:
        raw = gzip.decompress(raw)
    return json.loads(raw.decode("utf-8"))


def _gzip_file(source: Path, target: Path) -> int:
    data = gzip.compress(source.read_bytes())
    _atomic_write(target, data)
    return len(data)


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
