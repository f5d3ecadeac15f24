"""Model client, tools, orchestration and checkpoints for the agent runtime."""

from .client import AIClient, ApproxByteCounter, ClientSettings, TiktokenCounter, TokenCounterRegistry

__all__ = ["AIClient", "ClientSettings", "TokenCounterRegistry", "ApproxByteCounter", "TiktokenCounter"]
