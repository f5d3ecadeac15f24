"""Snapshots of files and conversation state for rollback."""

from .manager import DEFAULT_CHECKPOINT_OPERATIONS, CheckpointManager, CheckpointPolicy
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

__all__ = [
    "Checkpoint",
    "CheckpointFilter",
    "CheckpointInfo",
    "CheckpointManager",
    "CheckpointOptions",
    "CheckpointPolicy",
    "CheckpointStats",
    "CheckpointStorage",
    "DEFAULT_CHECKPOINT_OPERATIONS",
    "FileSnapshot",
    "RestoreResult",
]
