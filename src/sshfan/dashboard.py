"""TUI Dashboard for sshfan."""

from __future__ import annotations

from rich.markup import escape
from rich.text import Text
from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker

from .config import RunConfig
from .executor import Executor, FailureReport, RunOutcome, TargetStatus
from .session import SessionProvider

STATUS_ICONS = {
    TargetStatus.PENDING: ("○", "dim"),
    TargetStatus.CONNECTING: ("◌", "yellow"),
    TargetStatus.RUNNING: ("●", "yellow"),
    TargetStatus.SUCCESS: ("✓", "green"),
    TargetStatus.FAILED: ("✗", "red"),
}

FINISHED = (TargetStatus.SUCCESS, TargetStatus.FAILED)


class TargetPanel(Static):
    """A panel displaying output for a single target."""

    status: reactive[TargetStatus] = reactive(TargetStatus.PENDING)

    def __init__(self, address: str, panel_key: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self.address = address
        self.panel_key = panel_key

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), id=f"header-{self.panel_key}")
        yield RichLog(
            id=f"log-{self.panel_key}",
            highlight=True,
            markup=False,
            wrap=True,
            auto_scroll=True,
        )

    def _get_header(self) -> str:
        icon, color = STATUS_ICONS.get(self.status, ("?", "white"))
        return f"[{color}]{icon}[/] [{color}][bold]{escape(self.address)}[/bold][/] [{color}]{self.status.value}[/]"

    def watch_status(self, status: TargetStatus) -> None:
        """Update header when status changes."""
        if not self.is_mounted:
            return
        header = self.query_one(f"#header-{self.panel_key}", Label)
        header.update(self._get_header())

    def append_output(self, line: str, style: str = "") -> None:
        """Append a line of output to this panel."""
        log = self.query_one(f"#log-{self.panel_key}", RichLog)
        log.write(Text(line, style=style))


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    failed: reactive[int] = reactive(0)
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = "Running..." if self.running else "Complete"
        return (
            f"Progress: {self.completed}/{self.total} targets complete | "
            f"{self.failed} failed | {status} | Press 'q' to quit"
        )


class TargetOutput(Message):
    """Message for target output."""

    def __init__(self, address: str, line: str, style: str = "") -> None:
        super().__init__()
        self.address = address
        self.line = line
        self.style = style


class TargetStatusChange(Message):
    """Message for target status change."""

    def __init__(self, address: str, status: TargetStatus) -> None:
        super().__init__()
        self.address = address
        self.status = status


class Dashboard(App):
    """Main TUI Dashboard application."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 2;
    }

    TargetPanel {
        border: solid $primary;
        height: 100%;
    }

    TargetPanel RichLog {
        height: 1fr;
    }

    StatusBar {
        dock: bottom;
        height: 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    def __init__(
        self,
        config: RunConfig,
        provider: SessionProvider,
        targets: list[str],
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.config = config
        self.provider = provider
        # Duplicate addresses share one panel.
        self.targets = list(targets)
        self.panels: dict[str, TargetPanel] = {}
        self.executor: Executor | None = None
        self.outcome: RunOutcome | None = None
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        for i, address in enumerate(dict.fromkeys(self.targets)):
            panel = TargetPanel(address, str(i), id=f"panel-{i}")
            self.panels[address] = panel
            yield panel

        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start execution when the app mounts."""
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.total = len(self.targets)

        self.executor = Executor(
            self.config,
            self.provider,
            on_stdout=self._on_stdout,
            on_stderr=self._on_stderr,
            on_failure=self._on_failure,
            on_status=self._on_status,
        )

        # Start execution using Textual's worker system
        self._worker = self.run_worker(self._run_execution(), exclusive=True, thread=True)

    async def _run_execution(self) -> None:
        """Run the executor and keep the outcome for the exit status."""
        if self.executor:
            self.outcome = await self.executor.run_all(self.targets)

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        """Handle worker completion."""
        if event.worker == self._worker and event.state == event.worker.state.SUCCESS:
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.running = False

    # Executor callbacks run in the worker thread; post_message is thread safe.
    def _on_stdout(self, address: str, line: str) -> None:
        self.post_message(TargetOutput(address, line))

    def _on_stderr(self, address: str, line: str) -> None:
        self.post_message(TargetOutput(address, line, style="red"))

    def _on_failure(self, report: FailureReport) -> None:
        self.post_message(TargetOutput(report.target, report.message, style="bold red"))

    def _on_status(self, address: str, status: TargetStatus) -> None:
        self.post_message(TargetStatusChange(address, status))

    def on_target_output(self, message: TargetOutput) -> None:
        """Handle TargetOutput message in main thread."""
        if message.address in self.panels:
            self.panels[message.address].append_output(message.line, message.style)

    def on_target_status_change(self, message: TargetStatusChange) -> None:
        """Handle TargetStatusChange message in main thread."""
        if message.address in self.panels:
            self.panels[message.address].status = message.status

        if message.status in FINISHED:
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.completed += 1
            if message.status == TargetStatus.FAILED:
                status_bar.failed += 1

    async def action_quit(self) -> None:
        """Quit the application."""
        if self._worker and self._worker.is_running:
            self._worker.cancel()
        self.exit()
