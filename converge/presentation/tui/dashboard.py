"""
Dashboard TUI

Architectural Intent:
- Textual-based dashboard for the recorded state and run history
- Reads only from the state store; never calls the control plane
- Supports severity-colored log messages
- Configurable refresh interval (+/- keys)
"""

from textual.app import App, ComposeResult
from textual.widgets import Header, Footer, DataTable, Log
from textual.containers import Vertical
import asyncio
import logging
from datetime import datetime

from converge.domain.ports.state_store_port import StateStorePort

logger = logging.getLogger(__name__)

SEVERITY_STYLES = {
    "info": "green",
    "warning": "yellow",
    "error": "red",
    "critical": "bold red",
}


class Dashboard(App):
    """A Textual app showing converge state and runs."""

    CSS = """
    Screen {
        layout: vertical;
    }
    #state_table {
        height: 2fr;
        border: solid green;
    }
    #runs_table {
        height: 1fr;
        border: solid blue;
    }
    Log {
        height: 1fr;
        border: solid yellow;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("r", "refresh", "Refresh"),
        ("+", "increase_interval", "Slower"),
        ("-", "decrease_interval", "Faster"),
    ]

    def __init__(self, state_store: StateStorePort, run_limit: int = 20):
        super().__init__()
        self.state_store = state_store
        self.run_limit = run_limit
        self._refresh_interval: float = 5.0
        self._log_max_lines: int = 500
        self._log_lines: list[str] = []
        self._last_serial: int = -1
        self._timer = None

    def compose(self) -> ComposeResult:
        yield Header()
        yield Vertical(
            DataTable(id="state_table"),
            DataTable(id="runs_table"),
            Log(id="activity_log"),
        )
        yield Footer()

    async def on_mount(self) -> None:
        self.query_one("#state_table", DataTable).add_columns(
            "Node", "Type", "Status", "Depends On", "Id"
        )
        self.query_one("#runs_table", DataTable).add_columns(
            "#", "Command", "Outcome", "Finished", "Counts"
        )
        self.log_message("converge dashboard initialized.", severity="info")
        self.log_message(
            f"Refresh interval: {self._refresh_interval}s (use +/- to adjust)",
            severity="info",
        )
        await self._refresh_tables()
        self._timer = self.set_interval(self._refresh_interval, self._refresh_tables)

    def log_message(self, message: str, severity: str = "info") -> None:
        log_widget = self.query_one(Log)
        timestamp = datetime.now().strftime("%H:%M:%S")
        style = SEVERITY_STYLES.get(severity, "")
        prefix = severity.upper()

        line = f"[{timestamp}] [{prefix}] {message}"
        self._log_lines.append(line)

        # Cap log growth
        if len(self._log_lines) > self._log_max_lines:
            self._log_lines = self._log_lines[-self._log_max_lines:]

        if style:
            log_widget.write_line(f"[{style}]{line}[/{style}]")
        else:
            log_widget.write_line(line)

    async def action_refresh(self) -> None:
        await self._refresh_tables()

    def action_increase_interval(self) -> None:
        self._refresh_interval = min(60.0, self._refresh_interval + 1.0)
        self._restart_timer()
        self.log_message(f"Refresh interval: {self._refresh_interval}s", severity="info")

    def action_decrease_interval(self) -> None:
        self._refresh_interval = max(1.0, self._refresh_interval - 1.0)
        self._restart_timer()
        self.log_message(f"Refresh interval: {self._refresh_interval}s", severity="info")

    def _restart_timer(self) -> None:
        if self._timer:
            self._timer.stop()
        self._timer = self.set_interval(self._refresh_interval, self._refresh_tables)

    async def _refresh_tables(self) -> None:
        try:
            await self.update_tables()
        except Exception as e:
            self.log_message(f"Error reading state: {e}", severity="error")

    async def update_tables(self) -> None:
        loop = asyncio.get_running_loop()
        record = await loop.run_in_executor(None, self.state_store.load)
        runs = await loop.run_in_executor(None, self.state_store.list_runs, self.run_limit)

        state_table = self.query_one("#state_table", DataTable)
        state_table.clear()
        for node_id in sorted(record.nodes):
            node = record.nodes[node_id]
            state_table.add_row(
                node_id,
                node.type,
                node.status.name,
                ", ".join(node.dependencies) or "-",
                str(node.remote_attributes.get("id", "-")),
                key=node_id,
            )
            if node.status.name == "FAILED":
                self.log_message(f"Node {node_id} is FAILED", severity="warning")

        runs_table = self.query_one("#runs_table", DataTable)
        runs_table.clear()
        for run in runs:
            counts = ", ".join(f"{k}={v}" for k, v in sorted(run["counts"].items()) if v)
            runs_table.add_row(
                str(run["id"]),
                run["command"],
                run["outcome"],
                run["finished_at"],
                counts or "-",
            )

        if record.serial != self._last_serial:
            self.log_message(
                f"State serial {record.serial}: {len(record.nodes)} node(s)", severity="info"
            )
            self._last_serial = record.serial
