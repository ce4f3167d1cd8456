"""Context file tracking."""

from .manager import ContextManager, FileUpdate, context_updates_to_content

__all__ = ["ContextManager", "FileUpdate", "context_updates_to_content"]
