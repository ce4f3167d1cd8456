"""Profiles and chat options with JSON and environment loading."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

__all__ = ["Profile", "ChatOptions", "load_options", "DEFAULT_OPTIONS_PATH"]

LOGGER = logging.getLogger(__name__)

DEFAULT_OPTIONS_PATH = Path.home() / ".threadloom" / "options.json"

# Environment overrides apply to the active profile.
_ENV_OVERRIDES: Mapping[str, str] = {
    "THREADLOOM_MODEL": "model",
    "THREADLOOM_FAST_MODEL": "fast_model",
    "THREADLOOM_BASE_URL": "base_url",
    "THREADLOOM_API_KEY": "api_key",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "THREADLOOM_CHIME": "chime_on_attention",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "THREADLOOM_MAX_CONCURRENT_SUBAGENTS": "max_concurrent_subagents",
}
_OPTION_ENV_OVERRIDES: Mapping[str, str] = {
    "THREADLOOM_LOG_LEVEL": "log_level",
    "THREADLOOM_LOG_DIR": "log_dir",
}
_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(slots=True, frozen=True)
class Profile:
    """Model selection a thread inherits and passes on to its children."""

    name: str = "default"
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    fast_model: str | None = None
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    thinking: bool = False

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Profile":
        known = {name: payload[name] for name in cls.__dataclass_fields__ if name in payload}
        return cls(**known)


@dataclass(slots=True)
class ChatOptions:
    profiles: tuple[Profile, ...] = field(default_factory=lambda: (Profile(),))
    active_profile: str = "default"
    max_concurrent_subagents: int = 3
    auto_context: tuple[str, ...] = ()
    chime_on_attention: bool = True
    max_title_length: int = 80
    log_level: str = "INFO"
    log_dir: str | None = None
    # Loggers below ``threadloom.`` that always log at DEBUG, e.g. "chat.dispatch".
    debug_loggers: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.clamp()

    def clamp(self) -> None:
        """Coerce values into their supported ranges."""

        self.max_concurrent_subagents = max(1, int(self.max_concurrent_subagents))
        self.max_title_length = max(8, int(self.max_title_length))
        level = str(self.log_level).strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            LOGGER.warning("Unknown log level %r; using INFO", self.log_level)
            level = "INFO"
        self.log_level = level
        if not self.profiles:
            self.profiles = (Profile(),)
        if self.get_profile(self.active_profile) is None:
            LOGGER.warning(
                "Active profile %r is not defined; falling back to %r",
                self.active_profile,
                self.profiles[0].name,
            )
            self.active_profile = self.profiles[0].name

    def get_profile(self, name: str) -> Profile | None:
        for profile in self.profiles:
            if profile.name == name:
                return profile
        return None

    @property
    def profile(self) -> Profile:
        profile = self.get_profile(self.active_profile)
        assert profile is not None
        return profile

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChatOptions":
        profiles = tuple(
            Profile.from_dict(entry) for entry in payload.get("profiles", ()) if isinstance(entry, Mapping)
        )
        kwargs: dict[str, Any] = {}
        if profiles:
            kwargs["profiles"] = profiles
        for name in (
            "active_profile",
            "max_concurrent_subagents",
            "chime_on_attention",
            "max_title_length",
            "log_level",
            "log_dir",
        ):
            if name in payload:
                kwargs[name] = payload[name]
        for name in ("auto_context", "debug_loggers"):
            if name in payload:
                kwargs[name] = tuple(str(item) for item in payload[name])
        return cls(**kwargs)


def load_options(path: Path | str | None = None, *, env: Mapping[str, str] | None = None) -> ChatOptions:
    """Load options from *path* and apply ``THREADLOOM_*`` environment overrides.

    A missing file yields defaults; a file that is not valid JSON is logged and
    ignored.
    """

    target = Path(path) if path is not None else DEFAULT_OPTIONS_PATH
    payload: Mapping[str, Any] = {}
    if target.exists():
        try:
            loaded = json.loads(target.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("Unable to read options from %s; using defaults", target, exc_info=True)
        else:
            if isinstance(loaded, Mapping):
                payload = loaded
            else:
                LOGGER.warning("Options file %s must contain a JSON object", target)
    options = ChatOptions.from_dict(payload)
    return _apply_env_overrides(options, os.environ if env is None else env)


def _apply_env_overrides(options: ChatOptions, env: Mapping[str, str]) -> ChatOptions:
    profile_overrides: dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None:
            profile_overrides[field_name] = value
    for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None:
            setattr(options, field_name, value.strip().lower() in _TRUE_VALUES)
    for env_name, field_name in _OPTION_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value:
            setattr(options, field_name, value)
    for env_name, field_name in _INT_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None:
            continue
        try:
            setattr(options, field_name, int(value, 10))
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)

    if profile_overrides:
        active = options.profile
        updated = replace(active, **profile_overrides)
        options.profiles = tuple(updated if item is active else item for item in options.profiles)
        LOGGER.debug("Applied environment overrides to profile %s: %s", active.name, sorted(profile_overrides))
    options.clamp()
    return options
