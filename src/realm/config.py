"""Centralized configuration: Pydantic BaseSettings with a TOML source.

Settings live in ``~/.config/realm/config.toml`` (override the location with
``REALM_CONFIG``). Environment variables override the file using the
``REALM_`` prefix and ``__`` as the nested delimiter, e.g.
``REALM_CONTAINER__IMAGE=ubuntu:latest`` or ``REALM_SESSIONS__ON_DANGLING=recreate``.

Priority (highest wins): init args > env vars > config.toml

Usage::

    from realm.config import get_settings

    s = get_settings()
    print(s.container.image)
    print(s.workspaces_dir)
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

DEFAULT_IMAGE = "alpine/git"
DEFAULT_MOUNT_PATH = "/workspace"

# Legacy single-purpose env vars, honoured when no CLI flag is given.
DEFAULT_IMAGE_ENV = "REALM_DEFAULT_IMAGE"
DEFAULT_RUNTIME_ARGS_ENV = "REALM_DOCKER_ARGS"


def _config_path() -> Path:
    raw = os.environ.get("REALM_CONFIG", "~/.config/realm/config.toml")
    return Path(raw).expanduser()


# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models. Unknown keys are rejected so typos fail loudly."""

    model_config = {"extra": "forbid"}


class ContainerConfig(_StrictModel):
    image: str = DEFAULT_IMAGE
    runtime: str | None = None  # "docker" | "podman" | plugin runtime name | None = auto
    runtime_args: str = ""  # extra flags appended to every create, shell-quoted
    container_prefix: str = "realm-"
    timeout_seconds: float = 120.0  # ceiling for captured runtime calls

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v


class SshConfig(_StrictModel):
    enabled: bool = True


class GitConfig(_StrictModel):
    timeout_seconds: float = 600.0  # clones of large repos can be slow


class SessionsConfig(_StrictModel):
    # What to do when a session's container vanished from the runtime.
    on_dangling: Literal["error", "recreate"] = "error"
    # A recordless workspace younger than this may belong to a create in flight.
    orphan_grace_seconds: float = 60.0


class RegistryConfig(_StrictModel):
    busy_timeout_seconds: float = 30.0


class LoggingConfig(_StrictModel):
    level: str = "WARNING"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file=_config_path(),
        env_prefix="REALM_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    container: ContainerConfig = ContainerConfig()
    ssh: SshConfig = SshConfig()
    git: GitConfig = GitConfig()
    sessions: SessionsConfig = SessionsConfig()
    registry: RegistryConfig = RegistryConfig()
    logging: LoggingConfig = LoggingConfig()
    state_root: Path = Path("~/.realm")

    @field_validator("state_root")
    @classmethod
    def expand_state_root(cls, v: Path) -> Path:
        return v.expanduser().resolve()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > config.toml."""
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    # --- Computed properties ---

    @cached_property
    def home_dir(self) -> Path:
        return Path.home()

    @cached_property
    def registry_path(self) -> Path:
        return self.state_root / "sessions.db"

    @cached_property
    def workspaces_dir(self) -> Path:
        return self.state_root / "workspaces"


# ---------------------------------------------------------------------------
# Option resolution helpers
# ---------------------------------------------------------------------------


def derive_mount_path(project_dir: str | Path) -> str:
    """Default in-container mount path: ``/<basename of project>``.

    Falls back to ``/workspace`` for the filesystem root.
    """
    trimmed = str(project_dir).rstrip("/")
    name = trimmed.rsplit("/", 1)[-1] if trimmed else ""
    return f"/{name}" if name else DEFAULT_MOUNT_PATH


def resolve_image(flag: str | None, settings: Settings | None = None) -> str:
    """Image precedence: --image flag > $REALM_DEFAULT_IMAGE > config."""
    if flag:
        return flag
    if env := os.environ.get(DEFAULT_IMAGE_ENV):
        return env
    return (settings or get_settings()).container.image


def resolve_runtime_args(flag: str | None, settings: Settings | None = None) -> str:
    """Runtime-args precedence: --runtime-args flag > $REALM_DOCKER_ARGS > config."""
    if flag is not None:
        return flag
    if (env := os.environ.get(DEFAULT_RUNTIME_ARGS_ENV)) is not None:
        return env
    return (settings or get_settings()).container.runtime_args


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
