"""
Terminal UI for toggling port forwards, built with Textual.

Layout:
- Services table (left) and ports table of the highlighted service (right)
- Status bar with the namespace and tunnel counts
- Footer with key bindings

The app never mutates session state. It renders the rows published by the
session manager and turns key presses into toggle commands.
"""

from rich.text import Text
from textual import on, work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.widgets import DataTable, Footer, Static

from kubeforward.cli.tui.styles import create_status_text, truncate
from kubeforward.models.entries import EntryKey, ServiceInfo, SessionView
from kubeforward.models.enums import TunnelStatus
from kubeforward.session.manager import SessionManager
from kubeforward.session.publisher import EntryChanged, SnapshotEvent
from kubeforward.utils.logger import get_logger

logger = get_logger(__name__)


def _port_row_key(key: EntryKey) -> str:
    _, port, protocol = key
    return f"{port}/{protocol}"


class ForwardApp(App):
    """Textual app listing services and ports with their tunnel status."""

    TITLE = "kubeforward"

    BINDINGS = [
        Binding("q", "quit", "Quit", show=True),
        Binding("left", "focus_services", "Services", priority=True),
        Binding("right", "focus_ports", "Ports", priority=True),
        Binding("enter", "toggle", "Toggle forwarding", priority=True),
        Binding("a", "toggle_all", "Toggle all ports"),
    ]

    CSS = """
    ForwardApp {
        background: #0d0d1a;
    }

    #tables {
        height: 1fr;
    }

    .table-container {
        height: 100%;
        border: solid #333;
    }

    #services-container {
        width: 2fr;
    }

    #ports-container {
        width: 3fr;
    }

    .table-container:focus-within {
        border: solid #00d4ff;
    }

    .table-title {
        text-style: bold;
        background: #333;
        padding: 0 1;
        height: 1;
    }

    DataTable {
        height: 1fr;
    }

    #status-bar {
        dock: bottom;
        height: 1;
        background: #1a1a2e;
        padding: 0 1;
        color: #888;
    }
    """

    def __init__(self, manager: SessionManager, namespace: str) -> None:
        super().__init__()
        self.manager = manager
        self.namespace = namespace
        self.sub_title = f"namespace: {namespace}"
        self.data_rows: dict[EntryKey, SessionView] = {
            row.key: row for row in manager.publisher.snapshot()
        }
        self._selected_service: str | None = None
        self._port_keys: dict[str, EntryKey] = {}

    def compose(self) -> ComposeResult:
        with Horizontal(id="tables"):
            with Vertical(id="services-container", classes="table-container"):
                yield Static("Services", classes="table-title")
                yield DataTable(id="services-table", cursor_type="row")
            with Vertical(id="ports-container", classes="table-container"):
                yield Static("Ports", classes="table-title")
                yield DataTable(id="ports-table", cursor_type="row")
        yield Static("", id="status-bar")
        yield Footer()

    async def on_mount(self) -> None:
        services = self.query_one("#services-table", DataTable)
        services.add_column("Service", key="service")
        services.add_column("Ports", key="ports")
        services.add_column("Forwarded", key="forwarded")
        for name in self.manager.services:
            services.add_row(
                Text(name),
                str(len(self.manager.entries_for_service(name))),
                self._forwarded_text(name),
                key=name,
            )

        ports = self.query_one("#ports-table", DataTable)
        ports.add_column("Port", key="port")
        ports.add_column("Name", key="name")
        ports.add_column("Status", key="status")
        ports.add_column("Local", key="local")
        ports.add_column("Error", key="error")

        if self.manager.services:
            self._show_service(self.manager.services[0])
        services.focus()
        self._update_status_bar()

        await self.manager.start()
        self._watch_state()

    async def on_unmount(self) -> None:
        await self.manager.stop()

    # =========================================================================
    # State Subscription
    # =========================================================================

    @work(exclusive=True, group="state")
    async def _watch_state(self) -> None:
        async for event in self.manager.publisher.subscribe():
            if isinstance(event, SnapshotEvent):
                self.data_rows = {row.key: row for row in event.rows}
                self._render_all()
            elif isinstance(event, EntryChanged):
                self.data_rows[event.row.key] = event.row
                self._render_row(event.row)
            self._update_status_bar()

    def _render_all(self) -> None:
        for name in self.manager.services:
            self._render_service(name)
        if self._selected_service:
            self._show_service(self._selected_service)

    def _render_row(self, row: SessionView) -> None:
        self._render_service(row.entry.service)
        if row.entry.service != self._selected_service:
            return
        ports = self.query_one("#ports-table", DataTable)
        row_key = _port_row_key(row.key)
        if row_key not in self._port_keys:
            return
        ports.update_cell(row_key, "status", create_status_text(row.status))
        ports.update_cell(row_key, "local", self._local_text(row))
        ports.update_cell(row_key, "error", self._error_text(row))

    def _render_service(self, name: str) -> None:
        services = self.query_one("#services-table", DataTable)
        forwarding, _, _ = self._service_counts(name)
        services.update_cell(name, "forwarded", self._forwarded_text(name))
        style = "italic underline" if forwarding else "italic"
        services.update_cell(name, "service", Text(name, style=style))

    def _show_service(self, name: str) -> None:
        """Fill the ports table with the ports of one service."""
        self._selected_service = name
        ports = self.query_one("#ports-table", DataTable)
        cursor = ports.cursor_row
        ports.clear()
        self._port_keys = {}
        for entry in self.manager.entries_for_service(name):
            row = self.data_rows.get(entry.key)
            if row is None:
                continue
            row_key = _port_row_key(entry.key)
            self._port_keys[row_key] = entry.key
            ports.add_row(
                f"{entry.remote_port}/{entry.protocol}",
                entry.label or "-",
                create_status_text(row.status),
                self._local_text(row),
                self._error_text(row),
                key=row_key,
            )
        if 0 <= cursor < ports.row_count:
            ports.move_cursor(row=cursor)

    def _service_counts(self, name: str) -> tuple[int, int, int]:
        """(forwarding, total, failed) port counts of a service."""
        rows = [
            self.data_rows[e.key]
            for e in self.manager.entries_for_service(name)
            if e.key in self.data_rows
        ]
        on = sum(1 for r in rows if r.status.is_on)
        failed = sum(1 for r in rows if r.status == TunnelStatus.FAILED)
        return on, len(rows), failed

    def _forwarded_text(self, name: str) -> Text:
        on, total, failed = self._service_counts(name)
        text = Text(f"{on}/{total}", style="green" if on else "dim")
        if failed:
            text.append(f" ({failed} failed)", style="red")
        return text

    @staticmethod
    def _local_text(row: SessionView) -> str:
        if row.local_port is None or not row.status.is_on:
            return "-"
        return f"localhost:{row.local_port}"

    @staticmethod
    def _error_text(row: SessionView) -> Text:
        if row.status != TunnelStatus.FAILED or not row.last_error:
            return Text("")
        return Text(truncate(row.last_error, 60), style="red")

    def _update_status_bar(self) -> None:
        statuses = [r.status for r in self.data_rows.values()]
        active = statuses.count(TunnelStatus.ACTIVE)
        connecting = statuses.count(TunnelStatus.CONNECTING)
        failed = statuses.count(TunnelStatus.FAILED)
        bar = self.query_one("#status-bar", Static)
        bar.update(
            f"Namespace: [bold cyan]{self.namespace}[/]   "
            f"[green]{active} active[/]  [yellow]{connecting} connecting[/]  "
            f"[red]{failed} failed[/]"
        )

    # =========================================================================
    # Navigation and Actions
    # =========================================================================

    @on(DataTable.RowHighlighted, "#services-table")
    def _on_service_highlighted(self, event: DataTable.RowHighlighted) -> None:
        name = event.row_key.value
        if name and name != self._selected_service:
            self._show_service(name)

    def action_focus_services(self) -> None:
        self.query_one("#services-table", DataTable).focus()

    def action_focus_ports(self) -> None:
        ports = self.query_one("#ports-table", DataTable)
        if ports.row_count:
            ports.focus()

    def action_toggle(self) -> None:
        """Toggle the highlighted port, or every port of the highlighted service."""
        ports = self.query_one("#ports-table", DataTable)
        if ports.has_focus:
            key = self._highlighted_port()
            if key is not None:
                self.manager.toggle(key)
        else:
            self.action_toggle_all()

    def action_toggle_all(self) -> None:
        if self._selected_service:
            self.manager.toggle_all_for_service(self._selected_service)

    def _highlighted_port(self) -> EntryKey | None:
        ports = self.query_one("#ports-table", DataTable)
        if not ports.row_count:
            return None
        row_key, _ = ports.coordinate_to_cell_key(ports.cursor_coordinate)
        return self._port_keys.get(row_key.value)


def run_tui(
    services: list[ServiceInfo],
    namespace: str,
    driver,
) -> None:
    """Run the terminal UI until the user quits."""
    manager = SessionManager(services, driver)
    app = ForwardApp(manager, namespace)
    app.run()
