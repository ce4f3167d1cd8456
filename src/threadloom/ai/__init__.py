"""AI client, providers, prompts and tool wiring."""

from .client import AIClient, AIStreamEvent, ApproxByteCounter, ClientSettings

__all__ = ["AIClient", "AIStreamEvent", "ClientSettings", "ApproxByteCounter"]
