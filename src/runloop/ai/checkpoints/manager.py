"""Checkpoint creation, restore, and retention."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

from ..errors import (
    CheckpointError,
    CheckpointIntegrityError,
    CheckpointNotFoundError,
    ConfigurationError,
)
from ..orchestration.chat_history import ChatHistoryManager
from ..orchestration.keyed_mutex import KeyedMutex
from ..orchestration.types import ChatEntry
from .storage import CheckpointStorage
from .types import (
    Checkpoint,
    CheckpointFilter,
    CheckpointInfo,
    CheckpointOptions,
    CheckpointStats,
    FileSnapshot,
    RestoreResult,
)

__all__ = ["CheckpointPolicy", "CheckpointManager", "DEFAULT_CHECKPOINT_OPERATIONS"]

LOGGER = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_OPERATIONS: tuple[str, ...] = (
    "write_file",
    "edit_file",
    "delete_file",
    "apply_patch",
    "run_command",
)


@dataclass(slots=True, frozen=True)
class CheckpointPolicy:
    """Retention and trigger rules for checkpoints.

    Attributes:
        enabled: When false ``create`` raises and no tool triggers a checkpoint.
        max_checkpoints: Oldest checkpoints beyond this count are evicted.
        compress_after_days: Records older than this are gzipped.
        prune_after_days: Records older than this are deleted.
        conversation_depth: Only the newest N history entries are captured.
        storage_limit_mb: Oldest checkpoints are evicted while the store is larger.
        create_before_operations: Tool names that trigger an automatic checkpoint.
    """

    enabled: bool = True
    max_checkpoints: int = 100
    compress_after_days: int = 7
    prune_after_days: int = 30
    conversation_depth: int = 50
    storage_limit_mb: float = 100.0
    create_before_operations: tuple[str, ...] = DEFAULT_CHECKPOINT_OPERATIONS

    def validate(self) -> None:
        if self.max_checkpoints < 1:
            raise ConfigurationError("max_checkpoints must be at least 1", field="max_checkpoints", value=self.max_checkpoints)
        if self.conversation_depth < 1:
            raise ConfigurationError(
                "conversation_depth must be a positive integer",
                field="conversation_depth",
                value=self.conversation_depth,
            )
        if self.compress_after_days < 0:
            raise ConfigurationError(
                "compress_after_days cannot be negative", field="compress_after_days", value=self.compress_after_days
            )
        if self.prune_after_days < 1:
            raise ConfigurationError(
                "prune_after_days must be at least 1", field="prune_after_days", value=self.prune_after_days
            )
        if self.storage_limit_mb <= 0:
            raise ConfigurationError("storage_limit_mb must be positive", field="storage_limit_mb", value=self.storage_limit_mb)


class CheckpointManager:
    """Snapshots files plus the conversation and rolls them back on demand.

    ``create``, ``restore``, ``compress`` and ``delete`` on one checkpoint id
    never overlap; they share a :class:`KeyedMutex` keyed by ``ckpt:<id>``.
    Relative file paths resolve against ``workspace``; a path that resolves
    outside the workspace and the checkpoint store is never read or written.
    """

    def __init__(
        self,
        storage: CheckpointStorage,
        history: ChatHistoryManager,
        *,
        policy: CheckpointPolicy | None = None,
        mutex: KeyedMutex | None = None,
        workspace: Path | str | None = None,
    ) -> None:
        self._policy = policy or CheckpointPolicy()
        self._policy.validate()
        self._storage = storage
        self._history = history
        self._mutex = mutex or KeyedMutex()
        self._workspace = Path(workspace) if workspace is not None else Path.cwd()
        self._allowed_roots = (self._workspace.resolve(), storage.root.resolve())
        self._maintenance_running = False
        self._latest_id: str | None = None

    @property
    def policy(self) -> CheckpointPolicy:
        return self._policy

    @property
    def storage(self) -> CheckpointStorage:
        return self._storage

    @property
    def latest_id(self) -> str | None:
        """Id of the most recent checkpoint created by this manager."""

        return self._latest_id

    def should_create_for(self, tool_name: str) -> bool:
        return self._policy.enabled and tool_name in self._policy.create_before_operations

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    async def create(self, options: CheckpointOptions | None = None) -> Checkpoint:
        """Persist a snapshot of ``options.files`` and the current history.

        Files that do not exist yet are skipped; restoring such a checkpoint
        does not delete them.
        """

        if not self._policy.enabled:
            raise CheckpointError("Checkpoint system is disabled")
        options = options or CheckpointOptions()
        sequence = await self._storage.allocate_sequence()
        checkpoint_id = f"ckpt-{sequence:06d}-{uuid.uuid4().hex[:8]}"

        async def _create() -> Checkpoint:
            snapshots = await asyncio.to_thread(self._capture_files, options.files)
            state = self._history.snapshot()[-self._policy.conversation_depth :]
            metadata: dict[str, Any] = {"triggered_by": options.triggered_by, "model": "unknown"}
            if options.tool_name:
                metadata["tool_name"] = options.tool_name
            metadata.update(options.metadata)
            checkpoint = Checkpoint(
                id=checkpoint_id,
                sequence=sequence,
                timestamp=datetime.now(timezone.utc),
                description=options.description or _default_description(snapshots, options.files),
                files=tuple(snapshots),
                conversation_state=tuple(state),
                metadata=metadata,
            )
            await self._storage.save(checkpoint)
            return checkpoint

        checkpoint = await self._mutex.run_exclusive(_lock_key(checkpoint_id), _create)
        self._latest_id = checkpoint.id
        LOGGER.info(
            "Created checkpoint %s (%d file(s), %d entries)",
            checkpoint.id,
            len(checkpoint.files),
            len(checkpoint.conversation_state),
        )
        await self.run_maintenance()
        return checkpoint

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------
    async def restore(self, checkpoint_id: str) -> RestoreResult:
        """Write every verified file snapshot back to disk.

        A snapshot whose content no longer matches its recorded hash, or
        whose path points outside the workspace, is skipped and listed in
        ``files_failed``; the remaining files are still restored.  The history itself is left untouched: the caller decides
        how to apply ``conversation_state``.
        """

        async def _restore() -> RestoreResult:
            try:
                checkpoint = await self._storage.load(checkpoint_id)
            except CheckpointNotFoundError:
                return RestoreResult(
                    success=False,
                    checkpoint_id=checkpoint_id,
                    error=f"Checkpoint {checkpoint_id} not found",
                )
            restored: list[str] = []
            failed: list[str] = []
            for snapshot in checkpoint.files:
                target = self._resolve(snapshot.path)
                if target is None:
                    LOGGER.warning("Refusing to restore %s: outside the workspace", snapshot.path)
                    failed.append(snapshot.path)
                    continue
                actual = snapshot.verify()
                if actual is not None:
                    error = CheckpointIntegrityError(checkpoint_id, snapshot.path, snapshot.hash, actual)
                    LOGGER.warning("Skipping %s: %s", snapshot.path, error)
                    failed.append(snapshot.path)
                    continue
                try:
                    await asyncio.to_thread(_write_text_atomic, target, snapshot.content)
                except OSError as exc:
                    LOGGER.error("Failed to restore %s: %s", snapshot.path, exc)
                    failed.append(snapshot.path)
                    continue
                restored.append(snapshot.path)
            return RestoreResult(
                success=not failed,
                checkpoint_id=checkpoint_id,
                files_restored=tuple(restored),
                files_failed=tuple(failed),
                conversation_index=len(checkpoint.conversation_state),
                conversation_state=checkpoint.conversation_state,
                error=f"Failed to restore {len(failed)} file(s)" if failed else None,
            )

        result = await self._mutex.run_exclusive(_lock_key(checkpoint_id), _restore)
        LOGGER.info(
            "Restored checkpoint %s: %d restored, %d failed",
            checkpoint_id,
            len(result.files_restored),
            len(result.files_failed),
        )
        return result

    async def conversation_state(self, checkpoint_id: str) -> tuple[ChatEntry, ...]:
        checkpoint = await self._storage.load(checkpoint_id)
        return checkpoint.conversation_state

    # ------------------------------------------------------------------
    # Queries & removal
    # ------------------------------------------------------------------
    async def list(self, filter: CheckpointFilter | None = None) -> list[CheckpointInfo]:
        return await self._storage.list(filter)

    async def get(self, checkpoint_id: str) -> Checkpoint | None:
        try:
            return await self._storage.load(checkpoint_id)
        except CheckpointNotFoundError:
            return None

    async def get_info(self, checkpoint_id: str) -> CheckpointInfo | None:
        return await self._storage.get_info(checkpoint_id)

    async def delete(self, checkpoint_id: str) -> bool:
        deleted = await self._mutex.run_exclusive(
            _lock_key(checkpoint_id), lambda: self._storage.delete(checkpoint_id)
        )
        if deleted and self._latest_id == checkpoint_id:
            self._latest_id = None
        return deleted

    async def compress(self, checkpoint_id: str) -> bool:
        return await self._mutex.run_exclusive(
            _lock_key(checkpoint_id), lambda: self._storage.compress(checkpoint_id)
        )

    async def stats(self) -> CheckpointStats:
        return await self._storage.stats()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    async def run_maintenance(self) -> None:
        """Compress, prune, and enforce the count and size limits.

        Concurrent invocations are skipped rather than queued.
        """

        if self._maintenance_running:
            LOGGER.debug("Checkpoint maintenance already running; skipping")
            return
        self._maintenance_running = True
        try:
            await self.compress_older_than(self._cutoff(self._policy.compress_after_days))
            await self.prune_older_than(self._cutoff(self._policy.prune_after_days))
            await self._enforce_count_limit()
            await self._enforce_storage_limit()
        except (CheckpointError, OSError) as exc:
            LOGGER.warning("Checkpoint maintenance failed: %s", exc)
        finally:
            self._maintenance_running = False

    async def compress_older_than(self, cutoff: datetime) -> int:
        compressed = 0
        for info in await self._storage.list():
            if info.timestamp < cutoff and not info.compressed:
                if await self.compress(info.id):
                    compressed += 1
        if compressed:
            LOGGER.debug("Compressed %d checkpoint(s)", compressed)
        return compressed

    async def prune_older_than(self, cutoff: datetime) -> int:
        removed = 0
        for info in await self._storage.list():
            if info.timestamp < cutoff and await self.delete(info.id):
                removed += 1
        if removed:
            LOGGER.debug("Pruned %d checkpoint(s)", removed)
        return removed

    async def _enforce_count_limit(self) -> None:
        infos = await self._storage.list()
        for info in infos[self._policy.max_checkpoints :]:
            await self.delete(info.id)

    async def _enforce_storage_limit(self) -> None:
        limit = int(self._policy.storage_limit_mb * 1024 * 1024)
        infos = await self._storage.list()
        total = sum(info.size for info in infos)
        # Newest first; evict from the tail but always keep the newest one.
        for info in reversed(infos[1:]):
            if total <= limit:
                break
            if info.size <= 0:
                continue
            await self.delete(info.id)
            total -= info.size

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _capture_files(self, paths: Sequence[str]) -> list[FileSnapshot]:
        snapshots: list[FileSnapshot] = []
        for path in paths:
            target = self._resolve(path)
            if target is None:
                LOGGER.warning("Checkpoint skipped %s: outside the workspace", path)
                continue
            try:
                content = target.read_bytes().decode("utf-8")
            except FileNotFoundError:
                LOGGER.warning("Checkpoint skipped missing file %s", path)
                continue
            except (OSError, UnicodeDecodeError) as exc:
                LOGGER.warning("Checkpoint skipped unreadable file %s: %s", path, exc)
                continue
            snapshots.append(FileSnapshot.capture(path, content))
        return snapshots

    def _resolve(self, path: str) -> Path | None:
        """Absolute location of ``path``, or ``None`` when it escapes the allowed roots."""

        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self._workspace / candidate
        resolved = candidate.resolve()
        if any(resolved.is_relative_to(root) for root in self._allowed_roots):
            return resolved
        return None

    @staticmethod
    def _cutoff(days: int) -> datetime:
        return datetime.now(timezone.utc) - timedelta(days=days)


def _lock_key(checkpoint_id: str) -> str:
    return f"ckpt:{checkpoint_id}"


def _default_description(snapshots: Sequence[FileSnapshot], requested: Iterable[str]) -> str:
    paths = [snapshot.path for snapshot in snapshots] or list(requested)
    if not paths:
        return "Auto-generated checkpoint"
    if len(paths) == 1:
        return f"Before modifying {paths[0]}"
    return f"Before modifying {len(paths)} files"


def _write_text_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.restore.tmp")
    tmp_path.write_bytes(content.encode("utf-8"))
    os.replace(tmp_path, path)

