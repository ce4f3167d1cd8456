"""Service layer helpers (settings, telemetry)."""

from .settings import ChatOptions, Profile, load_options
from .telemetry import emit, register_event_listener, unregister_event_listener

__all__ = [
    "ChatOptions",
    "Profile",
    "emit",
    "load_options",
    "register_event_listener",
    "unregister_event_listener",
]
