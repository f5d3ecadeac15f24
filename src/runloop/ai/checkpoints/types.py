"""Checkpoint records and their JSON representation."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from ..orchestration.types import ChatEntry, EntryRole, ToolCall, ToolResult

__all__ = [
    "FileSnapshot",
    "Checkpoint",
    "CheckpointInfo",
    "CheckpointStats",
    "CheckpointOptions",
    "CheckpointFilter",
    "RestoreResult",
    "calculate_hash",
    "entry_to_dict",
    "entry_from_dict",
]


def calculate_hash(content: str) -> str:
    """sha256 hex digest of ``content`` encoded as UTF-8."""

    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _now() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Snapshots
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class FileSnapshot:
    """Content of one file at checkpoint time.

    Attributes:
        path: File path as given when the checkpoint was created.
        content: Full text content.
        hash: sha256 of ``content``; verified before restore.
        size: UTF-8 byte length of ``content``.
    """

    path: str
    content: str
    hash: str
    size: int

    @classmethod
    def capture(cls, path: str, content: str) -> FileSnapshot:
        return cls(path=path, content=content, hash=calculate_hash(content), size=len(content.encode("utf-8")))

    def verify(self) -> str | None:
        """Return the actual hash when it differs from the recorded one."""

        actual = calculate_hash(self.content)
        return None if actual == self.hash else actual

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "content": self.content, "hash": self.hash, "size": self.size}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> FileSnapshot:
        return cls(
            path=str(payload["path"]),
            content=str(payload.get("content", "")),
            hash=str(payload.get("hash", "")),
            size=int(payload.get("size", 0)),
        )


@dataclass(slots=True, frozen=True)
class Checkpoint:
    """Immutable snapshot of files plus the conversation.

    Attributes:
        id: Checkpoint id, ``ckpt-<sequence>-<suffix>``.
        sequence: Monotonically increasing creation number.
        timestamp: Creation time (UTC).
        description: Human-readable reason.
        files: File snapshots.
        conversation_state: History snapshot at creation time.
        metadata: ``triggered_by``, ``tool_name``, ``model`` ...
    """

    id: str
    sequence: int
    timestamp: datetime
    description: str
    files: tuple[FileSnapshot, ...] = ()
    conversation_state: tuple[ChatEntry, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def files_changed(self) -> list[str]:
        return [snapshot.path for snapshot in self.files]

    @property
    def total_size(self) -> int:
        return sum(snapshot.size for snapshot in self.files)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "description": self.description,
            "files": [snapshot.to_dict() for snapshot in self.files],
            "conversationState": [entry_to_dict(entry) for entry in self.conversation_state],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Checkpoint:
        return cls(
            id=str(payload["id"]),
            sequence=int(payload.get("sequence", 0)),
            timestamp=datetime.fromisoformat(str(payload["timestamp"])),
            description=str(payload.get("description", "")),
            files=tuple(FileSnapshot.from_dict(item) for item in payload.get("files", ())),
            conversation_state=tuple(entry_from_dict(item) for item in payload.get("conversationState", ())),
            metadata=dict(payload.get("metadata") or {}),
        )


# -----------------------------------------------------------------------------
# Index records
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CheckpointInfo:
    """Index entry describing a stored checkpoint without its payload."""

    id: str
    sequence: int
    timestamp: datetime
    description: str
    files_changed: tuple[str, ...]
    size: int
    compressed: bool = False

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint, *, size: int, compressed: bool = False) -> CheckpointInfo:
        return cls(
            id=checkpoint.id,
            sequence=checkpoint.sequence,
            timestamp=checkpoint.timestamp,
            description=checkpoint.description,
            files_changed=tuple(checkpoint.files_changed),
            size=size,
            compressed=compressed,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
            "description": self.description,
            "filesChanged": list(self.files_changed),
            "size": self.size,
            "compressed": self.compressed,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CheckpointInfo:
        return cls(
            id=str(payload["id"]),
            sequence=int(payload.get("sequence", 0)),
            timestamp=datetime.fromisoformat(str(payload["timestamp"])),
            description=str(payload.get("description", "")),
            files_changed=tuple(payload.get("filesChanged", ())),
            size=int(payload.get("size", 0)),
            compressed=bool(payload.get("compressed", False)),
        )


@dataclass(slots=True, frozen=True)
class CheckpointStats:
    total_count: int = 0
    total_size: int = 0
    compressed_count: int = 0
    oldest: datetime | None = None
    newest: datetime | None = None

    @classmethod
    def from_infos(cls, infos: Sequence[CheckpointInfo]) -> CheckpointStats:
        if not infos:
            return cls()
        timestamps = [info.timestamp for info in infos]
        return cls(
            total_count=len(infos),
            total_size=sum(info.size for info in infos),
            compressed_count=sum(1 for info in infos if info.compressed),
            oldest=min(timestamps),
            newest=max(timestamps),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCount": self.total_count,
            "totalSize": self.total_size,
            "compressedCount": self.compressed_count,
            "oldestDate": self.oldest.isoformat() if self.oldest else None,
            "newestDate": self.newest.isoformat() if self.newest else None,
        }


# -----------------------------------------------------------------------------
# Requests & results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CheckpointOptions:
    """What to capture.

    Attributes:
        files: Paths to snapshot; missing files are skipped with a warning.
        description: Defaults to ``"Before modifying <files>"``.
        triggered_by: ``"manual"`` or ``"tool"``.
        tool_name: Tool whose execution triggered the checkpoint.
        metadata: Extra metadata stored with the checkpoint.
    """

    files: Sequence[str] = ()
    description: str | None = None
    triggered_by: str = "manual"
    tool_name: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class CheckpointFilter:
    before: datetime | None = None
    after: datetime | None = None
    file: str | None = None
    limit: int | None = None

    def matches(self, info: CheckpointInfo) -> bool:
        if self.before is not None and info.timestamp >= self.before:
            return False
        if self.after is not None and info.timestamp <= self.after:
            return False
        if self.file is not None and self.file not in info.files_changed:
            return False
        return True


@dataclass(slots=True, frozen=True)
class RestoreResult:
    """Outcome of restoring a checkpoint.

    ``success`` is true only when every file snapshot was written back.
    ``conversation_index`` is the history length recorded in the checkpoint.
    """

    success: bool
    checkpoint_id: str
    files_restored: tuple[str, ...] = ()
    files_failed: tuple[str, ...] = ()
    conversation_index: int = 0
    conversation_state: tuple[ChatEntry, ...] = ()
    error: str | None = None


# -----------------------------------------------------------------------------
# ChatEntry serialization
# -----------------------------------------------------------------------------


def _call_to_dict(call: ToolCall) -> dict[str, Any]:
    return {"id": call.id, "name": call.name, "arguments": call.arguments_json}


def _call_from_dict(payload: Mapping[str, Any]) -> ToolCall:
    return ToolCall(id=str(payload["id"]), name=str(payload["name"]), arguments_json=str(payload.get("arguments", "")))


def entry_to_dict(entry: ChatEntry) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "role": entry.role.value,
        "content": entry.content,
        "timestamp": entry.timestamp,
        "streaming": entry.streaming,
    }
    if entry.tool_calls:
        payload["toolCalls"] = [_call_to_dict(call) for call in entry.tool_calls]
    if entry.tool_call is not None:
        payload["toolCall"] = _call_to_dict(entry.tool_call)
    if entry.tool_result is not None:
        result = entry.tool_result
        payload["toolResult"] = {
            "success": result.success,
            "output": result.output,
            "error": result.error,
            "metadata": dict(result.metadata),
        }
    if entry.metadata:
        payload["metadata"] = dict(entry.metadata)
    return payload


def entry_from_dict(payload: Mapping[str, Any]) -> ChatEntry:
    result_payload = payload.get("toolResult")
    tool_result = None
    if isinstance(result_payload, Mapping):
        tool_result = ToolResult(
            success=bool(result_payload.get("success")),
            output=result_payload.get("output"),
            error=result_payload.get("error"),
            metadata=dict(result_payload.get("metadata") or {}),
        )
    call_payload = payload.get("toolCall")
    return ChatEntry(
        role=EntryRole(payload["role"]),
        content=str(payload.get("content", "")),
        tool_calls=tuple(_call_from_dict(item) for item in payload.get("toolCalls", ())),
        tool_call=_call_from_dict(call_payload) if isinstance(call_payload, Mapping) else None,
        tool_result=tool_result,
        streaming=bool(payload.get("streaming", False)),
        timestamp=float(payload.get("timestamp", 0.0)),
        metadata=dict(payload.get("metadata") or {}),
    )
