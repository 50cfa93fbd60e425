"""Data models for realm."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


class SessionStatus(enum.StrEnum):
    """Live container state. Derived from the runtime, never stored."""

    RUNNING = "running"
    STOPPED = "stopped"
    ABSENT = "absent"


@dataclass(frozen=True)
class VolumeMount:
    host_path: str
    container_path: str
    readonly: bool = False

    def as_arg(self) -> str:
        """``host:container[:ro]`` as taken by ``-v``."""
        spec = f"{self.host_path}:{self.container_path}"
        return f"{spec}:ro" if self.readonly else spec


@dataclass(frozen=True)
class RuntimeOptions:
    """Create-time snapshot needed to reproduce a session's container."""

    mount_path: str
    command: list[str] = field(default_factory=list)
    env: list[str] = field(default_factory=list)  # KEY=VALUE or bare KEY (inherit)
    ssh: bool = True
    runtime_args: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RuntimeOptions:
        return cls(
            mount_path=raw["mount_path"],
            command=list(raw.get("command", [])),
            env=list(raw.get("env", [])),
            ssh=bool(raw.get("ssh", True)),
            runtime_args=list(raw.get("runtime_args", [])),
        )


@dataclass(frozen=True)
class Session:
    """One persisted session record."""

    name: str
    project_path: Path
    workspace_path: Path
    image: str
    container_ref: str
    created_at: datetime
    runtime_options: RuntimeOptions
    last_used_at: datetime | None = None
    # Runtime-only options of the most recent create or resume.
    last_runtime_args: list[str] | None = None
    last_ssh: bool | None = None


@dataclass(frozen=True)
class SessionView:
    """A registry record enriched with live runtime status, for presentation."""

    session: Session
    status: SessionStatus

    @property
    def name(self) -> str:
        return self.session.name

    @property
    def running(self) -> bool:
        return self.status is SessionStatus.RUNNING


@dataclass
class SessionOptions:
    """Everything a caller can ask for when creating or resuming a session.

    ``image``, ``mount_path``, ``project_dir``, ``env`` and ``command`` only
    matter when the session is created. ``runtime_args`` and ``ssh`` are
    re-resolved on every invocation.
    """

    image: str | None = None
    mount_path: str | None = None
    project_dir: Path | None = None
    env: list[str] = field(default_factory=list)
    command: list[str] = field(default_factory=list)
    runtime_args: str | None = None
    ssh: bool | None = None
    detached: bool = False
    recreate: bool = False  # opt in to recreating a dangling session


@dataclass(frozen=True)
class ForwardingPlan:
    """How to expose the host SSH agent inside a container."""

    host_socket: str
    container_socket: str
    vm_bridged: bool

    @property
    def mount(self) -> VolumeMount:
        return VolumeMount(self.host_socket, self.container_socket)

    @property
    def env(self) -> dict[str, str]:
        return {"SSH_AUTH_SOCK": self.container_socket}


@dataclass(frozen=True)
class LaunchResult:
    """What ``create_or_resume`` did.

    ``action`` is one of: created, resumed, attached, recreated, already-running.
    ``exit_code`` is the attached command's exit status (0 when detached).
    """

    session: Session
    action: str
    exit_code: int = 0


@dataclass(frozen=True)
class RemovalReport:
    """Which sub-resources ``remove`` actually found and deleted."""

    name: str
    removed: list[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.removed)
