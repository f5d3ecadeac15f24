"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.checkpoints.manager import DEFAULT_CHECKPOINT_OPERATIONS, CheckpointPolicy
from ..ai.client import ClientSettings
from ..ai.errors import ConfigurationError
from ..ai.orchestration.approvals import ApprovalPolicy
from ..ai.orchestration.context_overflow import OverflowConfig
from ..ai.roles import BUILTIN_ROLES
from ..ai.tool_servers.types import ToolServerConfig
from ..ai.tools.types import SafetyLevel

__all__ = [
    "RuntimeSettings",
    "OverflowSettings",
    "CheckpointSettings",
    "ApprovalSettings",
    "SettingsStore",
    "SecretVault",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".runloop"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "RUNLOOP_API_KEY": "api_key",
    "RUNLOOP_BASE_URL": "base_url",
    "RUNLOOP_MODEL": "model",
    "RUNLOOP_ORGANIZATION": "organization",
    "RUNLOOP_ROLE": "role",
    "RUNLOOP_CHECKPOINT_DIR": "checkpoint_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "RUNLOOP_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "RUNLOOP_REQUEST_TIMEOUT": "request_timeout",
    "RUNLOOP_TEMPERATURE": "temperature",
    "RUNLOOP_TOOL_TIMEOUT": "tool_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "RUNLOOP_MAX_TOOL_ROUNDS": "max_tool_rounds",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"


@dataclass(slots=True)
class OverflowSettings:
    """Context-window budget for one session."""

    context_window: int = 128_000
    threshold: float = 0.8
    preserve_recent: int = 20
    max_entries: int = 200
    summarize_with_model: bool = True

    def to_config(self) -> OverflowConfig:
        return OverflowConfig(
            context_window=self.context_window,
            threshold=self.threshold,
            preserve_recent=self.preserve_recent,
            max_entries=self.max_entries,
        )


@dataclass(slots=True)
class CheckpointSettings:
    """Checkpoint retention and automatic trigger configuration."""

    enabled: bool = True
    max_checkpoints: int = 100
    compress_after_days: int = 7
    prune_after_days: int = 30
    conversation_depth: int = 50
    storage_limit_mb: float = 100.0
    create_before_operations: list[str] = field(default_factory=lambda: list(DEFAULT_CHECKPOINT_OPERATIONS))

    def to_policy(self) -> CheckpointPolicy:
        return CheckpointPolicy(
            enabled=self.enabled,
            max_checkpoints=self.max_checkpoints,
            compress_after_days=self.compress_after_days,
            prune_after_days=self.prune_after_days,
            conversation_depth=self.conversation_depth,
            storage_limit_mb=self.storage_limit_mb,
            create_before_operations=tuple(self.create_before_operations),
        )


@dataclass(slots=True)
class ApprovalSettings:
    """Which tool calls wait for a human decision."""

    enabled: bool = False
    min_level: str = SafetyLevel.WRITE.value
    always_require: list[str] = field(default_factory=list)
    never_require: list[str] = field(default_factory=list)
    timeout: float | None = None

    def to_policy(self) -> ApprovalPolicy:
        return ApprovalPolicy(
            enabled=self.enabled,
            min_level=SafetyLevel(self.min_level),
            always_require=frozenset(self.always_require),
            never_require=frozenset(self.never_require),
        )


@dataclass(slots=True)
class RuntimeSettings:
    """User-configurable runtime settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    organization: str | None = None
    temperature: float = 0.2
    max_completion_tokens: int | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_tool_rounds: int = 10
    tool_timeout: float = 30.0
    role: str = "general"
    checkpoint_dir: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    debug_logging: bool = False
    overflow: OverflowSettings = field(default_factory=OverflowSettings)
    checkpoints: CheckpointSettings = field(default_factory=CheckpointSettings)
    approvals: ApprovalSettings = field(default_factory=ApprovalSettings)
    tool_servers: list[ToolServerConfig] = field(default_factory=list)

    def validate(self) -> RuntimeSettings:
        """Raise :class:`ConfigurationError` for values the runtime cannot honour."""

        if not self.model:
            raise ConfigurationError("model must not be empty", field="model", value=self.model)
        if self.max_tool_rounds < 1:
            raise ConfigurationError(
                "max_tool_rounds must be at least 1", field="max_tool_rounds", value=self.max_tool_rounds
            )
        if self.tool_timeout <= 0:
            raise ConfigurationError("tool_timeout must be positive", field="tool_timeout", value=self.tool_timeout)
        if self.max_completion_tokens is not None and self.max_completion_tokens < 1:
            raise ConfigurationError(
                "max_completion_tokens must be positive",
                field="max_completion_tokens",
                value=self.max_completion_tokens,
            )
        if self.approvals.min_level not in {level.value for level in SafetyLevel}:
            raise ConfigurationError(
                "approvals.min_level must be a safety level", field="approvals.min_level", value=self.approvals.min_level
            )
        if self.role not in BUILTIN_ROLES:
            raise ConfigurationError(f"Unknown agent role: {self.role}", field="role", value=self.role)
        names = [server.name for server in self.tool_servers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError("tool server names must be unique", field="tool_servers", value=duplicates)
        self.overflow.to_config().validate()
        self.checkpoints.to_policy().validate()
        return self

    def to_client_settings(self) -> ClientSettings:
        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            default_headers=dict(self.default_headers) or None,
            metadata={str(key): str(value) for key, value in self.metadata.items()} or None,
            debug_logging=self.debug_logging,
        )


class SecretVault:
    """Encrypts the API key with a Fernet key stored beside the settings file."""

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        return self._get_fernet().encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        try:
            return self._get_fernet().decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`RuntimeSettings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> RuntimeSettings:
        """Load settings from disk, applying programmatic and environment overrides."""

        payload = self._read_payload()
        settings = RuntimeSettings()
        needs_migration = False

        if payload:
            plaintext_key, needs_migration = self._decrypt_api_key(
                payload.pop(_API_KEY_FIELD, None), payload.pop("api_key", None)
            )
            data = _filter_fields(payload, RuntimeSettings, exclude={"api_key"})
            data["overflow"] = _nested(OverflowSettings, data.get("overflow"))
            data["checkpoints"] = _nested(CheckpointSettings, data.get("checkpoints"))
            data["approvals"] = _nested(ApprovalSettings, data.get("approvals"))
            data["tool_servers"] = _tool_servers_from_payload(data.get("tool_servers"))
            try:
                settings = RuntimeSettings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = RuntimeSettings()
            if plaintext_key:
                settings = replace(settings, api_key=plaintext_key)

        if needs_migration:
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - filesystem dependent
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="programmatic")
        settings = self._apply_env_overrides(settings)
        LOGGER.debug("Settings loaded from %s (model=%s)", self._path, settings.model)
        return settings

    def save(self, settings: RuntimeSettings) -> Path:
        """Persist settings to disk with atomic file writes."""

        body = json.dumps(self._serialize(settings), indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: RuntimeSettings) -> Dict[str, Any]:
        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["tool_servers"] = {
            server.name: {
                "command": server.command,
                "args": list(server.args),
                "env": dict(server.env),
                "cwd": server.cwd,
                "enabled": server.enabled,
                "connect_timeout": server.connect_timeout,
            }
            for server in settings.tool_servers
        }
        data["version"] = _SETTINGS_VERSION
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            return json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}

    def _apply_overrides(
        self,
        settings: RuntimeSettings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> RuntimeSettings:
        allowed = {item.name for item in fields(RuntimeSettings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key not in allowed:
                LOGGER.warning("Ignoring unknown %s settings override %r", source, key)
                continue
            filtered[key] = value
        metadata_override = filtered.get("metadata")
        if isinstance(metadata_override, Mapping):
            merged = dict(settings.metadata or {})
            merged.update(metadata_override)
            filtered["metadata"] = merged
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: RuntimeSettings) -> RuntimeSettings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings

    def _decrypt_api_key(self, ciphertext: str | None, legacy_plaintext: str | None) -> tuple[str, bool]:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext), False
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return "", False
        if legacy_plaintext:
            LOGGER.info("Detected plaintext API key; migrating to encrypted storage.")
            return legacy_plaintext, True
        return "", False


def _filter_fields(payload: Mapping[str, Any], cls: type, *, exclude: set[str] | None = None) -> Dict[str, Any]:
    allowed = {item.name for item in fields(cls)} - (exclude or set())
    result: Dict[str, Any] = {}
    for key, value in payload.items():
        if key in allowed:
            result[key] = value
        elif key != "version":
            LOGGER.warning("Ignoring unknown settings key %r", key)
    return result


def _nested(cls: type, payload: Any) -> Any:
    if not isinstance(payload, Mapping):
        return cls()
    try:
        return cls(**_filter_fields(payload, cls))
    except TypeError:
        LOGGER.warning("Invalid %s payload; using defaults", cls.__name__)
        return cls()


def _tool_servers_from_payload(payload: Any) -> list[ToolServerConfig]:
    if isinstance(payload, Mapping):
        return [
            ToolServerConfig.from_mapping(str(name), entry)
            for name, entry in payload.items()
            if isinstance(entry, Mapping)
        ]
    if isinstance(payload, list):
        return [
            ToolServerConfig.from_mapping(str(entry["name"]), entry)
            for entry in payload
            if isinstance(entry, Mapping) and entry.get("name")
        ]
    return []


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
