"""Interactive session browser (textual).

Lists sessions with their live status and lets the user pick one. The
browser never launches containers itself: it returns a :class:`BrowserAction`
and the CLI runs the matching orchestrator operation once the terminal is
released. Deletion is the exception, it runs in place after a confirm.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.screen import ModalScreen
from textual.widgets import DataTable, Footer, Header, Input, Label, Static

from realm.errors import InvalidSessionNameError
from realm.orchestrator import Orchestrator, validate_name
from realm.results import run_action
from realm.types import SessionStatus, SessionView


@dataclass(frozen=True)
class BrowserAction:
    kind: Literal["resume", "new", "path", "quit"]
    name: str | None = None
    image: str | None = None
    command: list[str] = field(default_factory=list)


def humanize_age(then: datetime, now: datetime | None = None) -> str:
    """Short relative age: ``42s ago``, ``5m ago``, ``3h ago``, ``2d ago``."""
    now = now or datetime.now(UTC)
    seconds = max(0, int((now - then).total_seconds()))
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds >= size:
            return f"{seconds // size}{unit} ago"
    return f"{seconds}s ago"


def format_row(view: SessionView, now: datetime | None = None) -> tuple[str, str, str, str, str]:
    """Table cells for one session: name, status, image, project, created."""
    session = view.session
    status = {
        SessionStatus.RUNNING: "[green]running[/green]",
        SessionStatus.STOPPED: "stopped",
        SessionStatus.ABSENT: "[red]missing[/red]",
    }[view.status]
    return (
        session.name,
        status,
        session.image,
        str(session.project_path),
        humanize_age(session.created_at, now),
    )


class ConfirmScreen(ModalScreen[bool]):
    BINDINGS = [
        Binding("y", "answer(True)", "Yes"),
        Binding("n,escape", "answer(False)", "No"),
    ]

    def __init__(self, prompt: str) -> None:
        super().__init__()
        self._prompt = prompt

    def compose(self) -> ComposeResult:
        with Vertical(id="dialog"):
            yield Label(self._prompt)
            yield Label("[b]y[/b] yes   [b]n[/b] no")

    def action_answer(self, value: bool) -> None:
        self.dismiss(value)


class NewSessionScreen(ModalScreen[BrowserAction | None]):
    """Name / image / command form. Empty image or command means default."""

    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    def compose(self) -> ComposeResult:
        with Vertical(id="dialog"):
            yield Label("New session")
            yield Input(placeholder="name", id="name")
            yield Input(placeholder="image (default from config)", id="image")
            yield Input(placeholder="command (default: image entrypoint)", id="command")
            yield Static("", id="error")

    def on_input_submitted(self, event: Input.Submitted) -> None:
        name = self.query_one("#name", Input).value.strip()
        image = self.query_one("#image", Input).value.strip() or None
        raw_command = self.query_one("#command", Input).value.strip()
        try:
            validate_name(name)
            command = shlex.split(raw_command)
        except (InvalidSessionNameError, ValueError) as exc:
            self.query_one("#error", Static).update(f"[red]{exc}[/red]")
            return
        self.dismiss(BrowserAction(kind="new", name=name, image=image, command=command))

    def action_cancel(self) -> None:
        self.dismiss(None)


class SessionBrowser(App[BrowserAction]):
    """Textual app listing realm sessions."""

    TITLE = "realm"

    CSS = """
    #dialog {
        width: 60;
        height: auto;
        padding: 1 2;
        border: thick $primary;
        background: $surface;
    }
    ConfirmScreen, NewSessionScreen {
        align: center middle;
    }
    #status-line {
        height: 1;
        padding: 0 1;
    }
    """

    BINDINGS = [
        Binding("enter", "resume", "Resume"),
        Binding("n", "new", "New"),
        Binding("d", "delete", "Delete"),
        Binding("p", "path", "Path"),
        Binding("r", "refresh", "Refresh"),
        Binding("q,escape", "quit_browser", "Quit"),
    ]

    def __init__(self, orchestrator: Orchestrator) -> None:
        super().__init__()
        self._orchestrator = orchestrator
        self._views: list[SessionView] = []

    def compose(self) -> ComposeResult:
        yield Header()
        yield DataTable(id="sessions", cursor_type="row", zebra_stripes=True)
        yield Static("", id="status-line")
        yield Footer()

    async def on_mount(self) -> None:
        table = self.query_one(DataTable)
        table.add_columns("Name", "Status", "Image", "Project", "Created")
        await self.action_refresh()

    def _set_status(self, text: str) -> None:
        self.query_one("#status-line", Static).update(text)

    def _selected(self) -> SessionView | None:
        table = self.query_one(DataTable)
        if not self._views or table.cursor_row is None:
            return None
        if 0 <= table.cursor_row < len(self._views):
            return self._views[table.cursor_row]
        return None

    async def action_refresh(self) -> None:
        result = await run_action(self._orchestrator.list(), label="List sessions")
        table = self.query_one(DataTable)
        table.clear()
        if not result.ok:
            self._views = []
            self._set_status(f"[red]{result.message}[/red]")
            return
        self._views = result.value
        for view in self._views:
            table.add_row(*format_row(view), key=view.name)
        self._set_status(
            f"{len(self._views)} session(s)" if self._views else "No sessions. Press n to create one."
        )

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        self.action_resume()

    def action_resume(self) -> None:
        view = self._selected()
        if view is not None:
            self.exit(BrowserAction(kind="resume", name=view.name))

    def action_path(self) -> None:
        view = self._selected()
        if view is not None:
            self.exit(BrowserAction(kind="path", name=view.name))

    def action_new(self) -> None:
        def _done(action: BrowserAction | None) -> None:
            if action is not None:
                self.exit(action)

        self.push_screen(NewSessionScreen(), _done)

    def action_delete(self) -> None:
        view = self._selected()
        if view is None:
            return
        name = view.name

        def _confirmed(yes: bool | None) -> None:
            if yes:
                self.run_worker(self._delete(name), exclusive=True)

        self.push_screen(ConfirmScreen(f"Delete session '{name}'?"), _confirmed)

    async def _delete(self, name: str) -> None:
        self._set_status(f"Deleting {name}...")
        result = await run_action(self._orchestrator.remove(name), label="Remove session")
        await self.action_refresh()
        if not result.ok:
            self._set_status(f"[red]{result.message}[/red]")
        else:
            self._set_status(f"Deleted {name}.")

    def action_quit_browser(self) -> None:
        self.exit(BrowserAction(kind="quit"))


async def browse(orchestrator: Orchestrator) -> BrowserAction:
    """Run the browser until the user picks an action."""
    action = await SessionBrowser(orchestrator).run_async()
    return action or BrowserAction(kind="quit")
