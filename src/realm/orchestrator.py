"""Sandbox orchestrator: reconciles the registry with the live runtime.

Per session name the state machine is::

    Absent -> Created -> {Running, Stopped} -> Removed

Only "Created" is persisted (the registry record). Running vs stopped is
asked of the runtime every time, so the registry can't drift from reality.

Two paths through :meth:`Orchestrator.create_or_resume`:
  Create path: no record. Clone a workspace, create + start a container,
      write the record. Failures roll back what this invocation created.
  Resume path: record exists. Create-time options are ignored, runtime-only
      options are re-resolved, the stored container is started/attached.
      A container that vanished from the runtime is a dangling session:
      an explicit error, or a rebuild from the stored snapshot when the
      caller (or config) opts in.
"""

from __future__ import annotations

import asyncio
import re
import shlex
import time
from datetime import UTC, datetime
from pathlib import Path

from realm import credentials
from realm.config import Settings, derive_mount_path, get_settings, resolve_image, resolve_runtime_args
from realm.credentials import HostPlatform
from realm.errors import (
    DanglingSessionError,
    DestinationExistsError,
    ExternalToolError,
    InvalidOptionsError,
    InvalidSessionNameError,
    NotARepositoryError,
    PartialCleanupError,
    RealmError,
    SessionConflictError,
)
from realm.executor import format_command
from realm.git_ops import find_repo_root, provision, teardown
from realm.logger import logger
from realm.runtime import RuntimeProvider, get_runtime
from realm.state import SessionRegistry, get_registry
from realm.types import (
    ForwardingPlan,
    LaunchResult,
    RemovalReport,
    RuntimeOptions,
    Session,
    SessionOptions,
    SessionStatus,
    SessionView,
    VolumeMount,
)

# Names that collide with CLI keywords.
RESERVED_NAMES = frozenset({"list", "path", "rm", "stop", "upgrade"})
_NAME_RE = re.compile(r"[A-Za-z0-9_-]+")

GITCONFIG_TARGET = "/etc/gitconfig"


def validate_name(name: str) -> None:
    """Raise InvalidSessionNameError unless *name* is usable as a session name."""
    if not name:
        raise InvalidSessionNameError("Session name is required.")
    if name in RESERVED_NAMES:
        raise InvalidSessionNameError(
            f"'{name}' is a reserved name and cannot be used as a session name."
        )
    if not _NAME_RE.fullmatch(name):
        raise InvalidSessionNameError(
            f"Invalid session name '{name}'. Use only letters, digits, hyphens, and underscores."
        )


def build_create_args(
    *,
    container_name: str,
    image: str,
    workspace: Path,
    options: RuntimeOptions,
    runtime_args: list[str],
    forwarding: ForwardingPlan | None = None,
    gitconfig: Path | None = None,
) -> list[str]:
    """Argument list for ``<cli> create`` (without the ``create`` verb).

    Always allocates a TTY with stdin open so the container can be attached
    later regardless of how it was first launched.
    """
    args = [
        "-it",
        "--name",
        container_name,
        "--hostname",
        container_name,
        "-v",
        VolumeMount(str(workspace), options.mount_path).as_arg(),
        "-w",
        options.mount_path,
    ]

    # Host git identity (user.name/user.email) without exposing the rest of $HOME
    if gitconfig is not None:
        args.extend(["-v", VolumeMount(str(gitconfig), GITCONFIG_TARGET, readonly=True).as_arg()])

    if forwarding is not None:
        args.extend(["-v", forwarding.mount.as_arg()])
        for key, value in forwarding.env.items():
            args.extend(["-e", f"{key}={value}"])

    args.extend(runtime_args)

    for entry in options.env:
        args.extend(["-e", entry])

    args.append(image)
    args.extend(options.command)
    return args


def split_runtime_args(raw: str) -> list[str]:
    try:
        return shlex.split(raw)
    except ValueError as exc:
        raise InvalidOptionsError(f"Failed to parse runtime args: {exc}") from exc


def _now() -> datetime:
    return datetime.now(UTC)


class Orchestrator:
    """Drives registry, provisioner, forwarder and runtime for session actions.

    Collaborators default to the configured singletons; tests inject fakes.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry | None = None,
        runtime: RuntimeProvider | None = None,
        settings: Settings | None = None,
        platform: HostPlatform | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.registry = registry or get_registry()
        self.runtime = runtime or get_runtime()
        self._platform = platform

    @property
    def platform(self) -> HostPlatform:
        """Where the runtime runs containers, as the SSH forwarder sees it."""
        if self._platform is not None:
            return self._platform
        return "vm-bridged" if self.runtime.vm_bridged else "native"

    # -- naming -------------------------------------------------------------

    def container_name(self, name: str) -> str:
        return f"{self.settings.container.container_prefix}{name}"

    def workspace_path_for(self, name: str) -> Path:
        return self.settings.workspaces_dir / name

    # -- public operations ----------------------------------------------------

    async def create_or_resume(self, name: str, options: SessionOptions | None = None) -> LaunchResult:
        """Create session *name*, or resume it if it already exists."""
        options = options or SessionOptions()
        validate_name(name)

        session = await self.registry.find(name)
        if session is None:
            return await self._create(name, options)
        return await self._resume(session, options)

    async def stop(self, name: str) -> SessionStatus:
        """Stop the session's container. Returns the status observed before stopping.

        The registry record is untouched. Stopping a stopped session is a no-op.
        """
        validate_name(name)
        session = await self.registry.get(name)
        await self.runtime.ensure_running()

        status = await self.runtime.inspect(session.container_ref)
        if status is SessionStatus.ABSENT:
            raise DanglingSessionError(
                name,
                f"container {_short(session.container_ref)} no longer exists.",
                hint=self._dangling_hint(name),
            )
        if status is SessionStatus.RUNNING:
            await self.runtime.stop(session.container_ref)
            logger.info("Session stopped", session=name)
        return status

    async def remove(self, name: str) -> RemovalReport:
        """Remove container, workspace and record, in that order.

        The record goes last so a retry after a failure can still find what's
        left. Absent sub-resources are skipped, so repeated calls converge on
        the fully removed state. Also cleans up the leftovers of an interrupted
        create (container/workspace without a record).

        A recordless workspace is also what a create in another process looks
        like before it writes its record. Such a workspace is only treated as
        left over once it is older than ``sessions.orphan_grace_seconds``.

        Raises:
            SessionConflictError: a recordless workspace is too fresh to remove.
            PartialCleanupError: a step failed; earlier steps stay done.
        """
        validate_name(name)
        session = await self.registry.find(name)
        if session is None:
            self._check_orphan_age(name)
        await self.runtime.ensure_running()

        container_name = self.container_name(name)
        refs = [container_name]
        if session is not None and session.container_ref != container_name:
            refs.insert(0, session.container_ref)
        workspace = session.workspace_path if session else self.workspace_path_for(name)

        removed: list[str] = []
        step = "inspect container"
        try:
            for ref in refs:
                step = "inspect container"
                status = await self.runtime.inspect(ref)
                if status is SessionStatus.ABSENT:
                    continue
                if status is SessionStatus.RUNNING:
                    step = "stop container"
                    await self.runtime.stop(ref)
                step = "remove container"
                await self.runtime.remove(ref)
                if "container" not in removed:
                    removed.append("container")

            step = "remove workspace"
            if workspace.exists() or workspace.is_symlink():
                await asyncio.to_thread(teardown, workspace, missing_ok=True)
                removed.append("workspace")

            step = "delete record"
            if await self.registry.delete(name, missing_ok=True):
                removed.append("record")
        except (RealmError, OSError) as exc:
            logger.error("Session removal incomplete", session=name, step=step, err=str(exc))
            raise PartialCleanupError(name, removed, step, exc) from exc

        if removed:
            logger.info("Session removed", session=name, removed=removed)
        else:
            logger.info("Nothing to remove", session=name)
        return RemovalReport(name=name, removed=removed)

    def _check_orphan_age(self, name: str) -> None:
        workspace = self.workspace_path_for(name)
        try:
            age = time.time() - workspace.lstat().st_mtime
        except FileNotFoundError:
            return
        if age < self.settings.sessions.orphan_grace_seconds:
            raise SessionConflictError(
                name,
                f"Its workspace was modified {age:.0f}s ago and may still be in use by a create "
                "in progress. Retry in a minute.",
            )

    async def list(self) -> list[SessionView]:
        """Registry entries (oldest first) with live runtime status."""
        sessions = await self.registry.list()
        if not sessions:
            return []
        await self.runtime.ensure_running()
        statuses = await asyncio.gather(*(self.runtime.inspect(s.container_ref) for s in sessions))
        return [SessionView(session=s, status=st) for s, st in zip(sessions, statuses, strict=True)]

    async def workspace_path(self, name: str) -> Path:
        """Host path of an existing session's workspace."""
        validate_name(name)
        session = await self.registry.get(name)
        return session.workspace_path

    # -- create path ----------------------------------------------------------

    def _resolve_project(self, project_dir: Path | None) -> Path:
        base = (project_dir or Path.cwd()).resolve()
        root = find_repo_root(base)
        if root is None:
            raise NotARepositoryError(str(base))
        return root

    def _ssh_enabled(self, options: SessionOptions) -> bool:
        return self.settings.ssh.enabled if options.ssh is None else options.ssh

    def _runtime_args(self, options: SessionOptions) -> list[str]:
        return split_runtime_args(resolve_runtime_args(options.runtime_args, self.settings))

    def _gitconfig(self) -> Path | None:
        path = self.settings.home_dir / ".gitconfig"
        return path if path.is_file() else None

    async def _create(self, name: str, options: SessionOptions) -> LaunchResult:
        project = self._resolve_project(options.project_dir)
        workspace = self.workspace_path_for(name)
        runtime_args = self._runtime_args(options)
        snapshot = RuntimeOptions(
            mount_path=options.mount_path or derive_mount_path(project),
            command=list(options.command),
            env=list(options.env),
            ssh=self._ssh_enabled(options),
            runtime_args=runtime_args,
        )
        image = resolve_image(options.image, self.settings)

        await self.runtime.ensure_running()

        try:
            await provision(project, workspace)
        except DestinationExistsError as exc:
            raise SessionConflictError(
                name,
                "Its workspace is being created by another invocation or was left behind "
                f"by an interrupted one. Run `realm rm {name}` to clean it up.",
            ) from exc

        plan = credentials.resolve(snapshot.ssh, platform=self.platform)
        container_ref: str | None = None
        try:
            await self._discard_stale_container(name)
            container_ref = await self._create_container(
                name, image, workspace, snapshot, runtime_args, plan
            )
            session = Session(
                name=name,
                project_path=project,
                workspace_path=workspace,
                image=image,
                container_ref=container_ref,
                created_at=_now(),
                runtime_options=snapshot,
                last_runtime_args=runtime_args,
                last_ssh=snapshot.ssh,
            )
            await self.registry.put(session, create_only=True)
        except BaseException:
            await self._rollback_create(name, container_ref, workspace)
            raise

        logger.info("Session created", session=name, image=image, container=_short(container_ref))
        if plan is not None:
            await credentials.fix_socket_permissions(self.runtime, image, plan)
        exit_code = await self._launch(session, SessionStatus.STOPPED, detached=options.detached)
        return LaunchResult(session=session, action="created", exit_code=exit_code)

    async def _discard_stale_container(self, name: str) -> None:
        """Drop a same-named container left by an interrupted create.

        Only called once this invocation owns the freshly cloned workspace,
        which no concurrent creator can also own.
        """
        container_name = self.container_name(name)
        if await self.runtime.inspect(container_name) is not SessionStatus.ABSENT:
            logger.warning("Removing stale container", container=container_name)
            await self.runtime.remove(container_name)

    async def _create_container(
        self,
        name: str,
        image: str,
        workspace: Path,
        snapshot: RuntimeOptions,
        runtime_args: list[str],
        plan: ForwardingPlan | None,
    ) -> str:
        args = build_create_args(
            container_name=self.container_name(name),
            image=image,
            workspace=workspace,
            options=snapshot,
            runtime_args=runtime_args,
            forwarding=plan,
            gitconfig=self._gitconfig(),
        )
        logger.info("Creating container", command=format_command(self.runtime.cli, ["create", *args]))
        try:
            return await self.runtime.create(args)
        except ExternalToolError as exc:
            if "already in use" in exc.output:
                raise SessionConflictError(name, "Another invocation created its container first.") from exc
            raise

    async def _rollback_create(self, name: str, container_ref: str | None, workspace: Path) -> None:
        """Undo a half-finished create. Leaves nothing this invocation made."""
        logger.warning("Rolling back session create", session=name)
        try:
            if container_ref is not None:
                await self.runtime.remove(container_ref)
            await asyncio.to_thread(teardown, workspace, missing_ok=True)
        except (RealmError, OSError) as exc:
            logger.error(
                "Rollback incomplete; run remove to finish cleanup",
                session=name,
                err=str(exc),
            )

    # -- resume path ----------------------------------------------------------

    def _dangling_hint(self, name: str) -> str:
        return (
            f"Run `realm {name} --recreate` to rebuild it from the saved options, "
            f"or `realm rm {name}` to discard it."
        )

    async def _resume(self, session: Session, options: SessionOptions) -> LaunchResult:
        name = session.name
        if options.command:
            raise InvalidOptionsError(
                f"Cannot pass a command when resuming session '{name}'.\n"
                f"Use `realm {name}` to resume, or `realm rm {name}` and recreate it."
            )
        ignored = [f for f in ("image", "mount_path", "project_dir") if getattr(options, f)]
        if options.env:
            ignored.append("env")
        if ignored:
            logger.warning("Ignoring create-time options on resume", session=name, options=ignored)

        await self.runtime.ensure_running()

        if not session.workspace_path.is_dir():
            raise DanglingSessionError(
                name,
                f"its workspace {session.workspace_path} is missing.",
                hint=f"Run `realm rm {name}` and create it again.",
            )

        # Runtime-only options come from this invocation, not the snapshot.
        runtime_args = self._runtime_args(options)
        ssh = self._ssh_enabled(options)
        plan = credentials.resolve(ssh, platform=self.platform)

        action = "resumed"
        status = await self.runtime.inspect(session.container_ref)
        if status is SessionStatus.ABSENT:
            recreate = options.recreate or self.settings.sessions.on_dangling == "recreate"
            if not recreate:
                raise DanglingSessionError(
                    name,
                    f"container {_short(session.container_ref)} no longer exists "
                    f"in {self.runtime.name}.",
                    hint=self._dangling_hint(name),
                )
            session = await self._recreate(session, runtime_args, plan)
            status = SessionStatus.STOPPED
            action = "recreated"
        elif status is SessionStatus.RUNNING:
            action = "already-running" if options.detached else "attached"

        session = await self.registry.update(
            name,
            last_used_at=_now(),
            last_runtime_args=runtime_args,
            last_ssh=ssh,
        )

        if status is SessionStatus.STOPPED:
            logger.info("Resuming session", session=name)
            if plan is not None:
                await credentials.fix_socket_permissions(self.runtime, session.image, plan)
        exit_code = await self._launch(session, status, detached=options.detached)
        return LaunchResult(session=session, action=action, exit_code=exit_code)

    async def _recreate(
        self,
        session: Session,
        runtime_args: list[str],
        plan: ForwardingPlan | None,
    ) -> Session:
        """Rebuild a vanished container over the preserved workspace."""
        logger.warning(
            "Recreating dangling session container",
            session=session.name,
            old_container=_short(session.container_ref),
        )
        await self._discard_stale_container(session.name)
        ref = await self._create_container(
            session.name,
            session.image,
            session.workspace_path,
            session.runtime_options,
            runtime_args,
            plan,
        )
        try:
            return await self.registry.update(session.name, container_ref=ref)
        except BaseException:
            await self.runtime.remove(ref)
            raise

    # -- shared ---------------------------------------------------------------

    async def _launch(self, session: Session, status: SessionStatus, *, detached: bool) -> int:
        """Start (if stopped) and attach unless *detached*. Returns the exit code."""
        ref = session.container_ref
        if status is SessionStatus.STOPPED:
            await self.runtime.start(ref)
            logger.info("Container started", session=session.name, container=_short(ref))
        if detached:
            return 0
        return await self.runtime.attach(ref)


def _short(ref: str | None) -> str:
    return (ref or "")[:12]
