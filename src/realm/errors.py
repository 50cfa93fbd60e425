"""Exception taxonomy shared by the orchestrator, registry and provisioner.

Every error raised on purpose derives from :class:`RealmError`. The CLI maps
them to exit codes and messages at the boundary; ``fatal`` marks failures of
a precondition (missing binary, corrupt store) as opposed to recoverable,
user-facing errors.
"""

from __future__ import annotations

from typing import ClassVar


class RealmError(Exception):
    """Base class for all expected realm failures."""

    fatal: ClassVar[bool] = False


# -- Input -------------------------------------------------------------------


class InputError(RealmError):
    """Bad request from the caller. Reported verbatim, never retried."""


class InvalidSessionNameError(InputError):
    pass


class InvalidOptionsError(InputError):
    pass


class NotARepositoryError(InputError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"'{path}' is not a git repository.")


class SessionNotFoundError(InputError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Session '{name}' not found.")


# -- Conflict ----------------------------------------------------------------


class SessionConflictError(RealmError):
    """The name is already taken (or being taken by a concurrent invocation)."""

    def __init__(self, name: str, detail: str = "") -> None:
        self.name = name
        msg = f"Session '{name}' already exists."
        if detail:
            msg = f"{msg} {detail}"
        super().__init__(msg)


# -- External tools ----------------------------------------------------------


class ExternalToolError(RealmError):
    """A runtime or git invocation exited non-zero."""

    def __init__(self, command: str, returncode: int | None, output: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.output = output
        detail = f": {output}" if output else ""
        super().__init__(f"{command} failed (exit {returncode}){detail}")


class CommandTimeoutError(ExternalToolError):
    def __init__(self, command: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(command, None, f"timed out after {timeout:g}s")


class ToolNotFoundError(RealmError):
    """The runtime or git binary is not installed / not running."""

    fatal = True


class WorkspaceError(RealmError):
    """Base for Workspace Provisioner failures."""


class SourceNotARepoError(WorkspaceError):
    pass


class DestinationExistsError(WorkspaceError):
    pass


class CloneFailedError(WorkspaceError):
    pass


class WorkspaceNotFoundError(WorkspaceError):
    pass


class WorkspaceDeleteError(WorkspaceError):
    pass


# -- Reconciliation ----------------------------------------------------------


class DanglingSessionError(RealmError):
    """The registry references a container or workspace that no longer exists."""

    def __init__(self, name: str, detail: str, hint: str = "") -> None:
        self.name = name
        self.hint = hint
        msg = f"Session '{name}' is dangling: {detail}"
        if hint:
            msg = f"{msg}\n{hint}"
        super().__init__(msg)


class PartialCleanupError(RealmError):
    """``remove`` stopped part-way. Safe to retry."""

    def __init__(self, name: str, completed: list[str], failed_step: str, cause: Exception) -> None:
        self.name = name
        self.completed = completed
        self.failed_step = failed_step
        self.cause = cause
        done = ", ".join(completed) if completed else "nothing"
        super().__init__(
            f"Removing session '{name}' failed at step '{failed_step}' ({cause}). "
            f"Completed: {done}. Run the removal again to finish cleanup."
        )


class RegistryError(RealmError):
    """The session store is unreadable or corrupt."""

    fatal = True
