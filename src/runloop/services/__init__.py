"""Service layer helpers (settings persistence)."""

from .settings import RuntimeSettings, SettingsStore

__all__ = ["RuntimeSettings", "SettingsStore"]
