"""proclineage - Textual application and command line entry point."""

import argparse
import logging
import signal
import sys
import threading
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container
from textual.logging import TextualHandler
from textual.widgets import DataTable, Footer, Static

from proclineage.config import DEFAULT_POLL_INTERVAL, SessionConfig
from proclineage.errors import LaunchFailure
from proclineage.models import ProcessRecord
from proclineage.report import STATUS_STYLES, print_report, short_hash, write_json_report
from proclineage.session import MonitoringSession, SessionState

logger = logging.getLogger(__name__)

COLUMNS = ("pid", "ppid", "name", "status", "hash", "path", "command")


class SessionHeader(Static):
    """Header widget showing the target and record counts."""

    DEFAULT_CSS = """
    SessionHeader {
        height: auto;
        min-height: 3;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, target: str, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._target = target
        self._state = SessionState.STARTING
        self._active = 0
        self._terminated = 0
        self._degraded = False

    def on_mount(self) -> None:
        self.update(self._render_text())

    def update_stats(self, records: list[ProcessRecord], state: SessionState, degraded: bool) -> None:
        """Update the header from a registry snapshot."""
        self._state = state
        self._terminated = sum(1 for rec in records if rec.has_exited)
        self._active = len(records) - self._terminated
        self._degraded = degraded
        self.update(self._render_text())

    def _render_text(self) -> str:
        mode = " [yellow](poll-only)[/yellow]" if self._degraded else ""
        return (
            f"Target: [bold]{self._target}[/bold]\n"
            f"State: {self._state.value}{mode}   "
            f"Active: [green]{self._active}[/green]   "
            f"Terminated: {self._terminated}"
        )


class RecordTable(Container):
    """Container for the process record table."""

    DEFAULT_CSS = """
    RecordTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._rows: dict[int, ProcessRecord] = {}

    def compose(self) -> ComposeResult:
        yield DataTable(id="record-table")

    def on_mount(self) -> None:
        table = self.query_one("#record-table", DataTable)
        table.cursor_type = "row"

        table.add_column("PID", key="pid", width=8)
        table.add_column("PPID", key="ppid", width=8)
        table.add_column("Name", key="name", width=20)
        table.add_column("Status", key="status", width=11)
        table.add_column("SHA", key="hash", width=18)
        table.add_column("Path", key="path", width=30)
        table.add_column("Command", key="command")

    def update_records(self, records: list[ProcessRecord]) -> None:
        """
        Update the table from a snapshot ordered by creation time.

        Records are never removed from the registry, so rows are only added
        or updated in place. A late record that sorts before existing rows
        forces a rebuild to keep creation order.
        """
        table = self.query_one("#record-table", DataTable)
        fresh = [rec for rec in records if rec.pid not in self._rows]
        if fresh and self._rows:
            last = max((r.creation_time, r.pid) for r in self._rows.values())
            if min((r.creation_time, r.pid) for r in fresh) < last:
                table.clear()
                self._rows.clear()

        for rec in records:
            row_key = str(rec.pid)
            previous = self._rows.get(rec.pid)
            if previous is None:
                table.add_row(*self._cells(rec), key=row_key)
            elif previous != rec:
                for column, value in zip(COLUMNS, self._cells(rec)):
                    table.update_cell(row_key, column, value)
            self._rows[rec.pid] = rec

    @staticmethod
    def _cells(rec: ProcessRecord) -> tuple[str, ...]:
        return (
            str(rec.pid),
            "-" if rec.parent_pid is None else str(rec.parent_pid),
            rec.name[:20],
            f"[{STATUS_STYLES[rec.status]}]{rec.status.value}[/]",
            short_hash(rec.content_hash),
            rec.executable_path,
            rec.command_line[:80],
        )


class ProcLineageApp(App):
    """Live view of a monitoring session."""

    TITLE = "proclineage"
    SUB_TITLE = "Process Lineage Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #session-header {
        dock: top;
        height: auto;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
    ]

    def __init__(self, session: MonitoringSession) -> None:
        super().__init__()
        self._session = session
        self._update_queue: Queue[tuple[list[ProcessRecord], bool]] = Queue()
        self._session.on_update = self._enqueue
        self._thread: threading.Thread | None = None
        self.final_records: list[ProcessRecord] | None = None
        self.error: Exception | None = None
        self._quitting = False

    def compose(self) -> ComposeResult:
        yield SessionHeader(self._session.config.target, id="session-header")
        yield RecordTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the session when the app is mounted."""
        self._thread = threading.Thread(target=self._run_session, daemon=True, name="MonitoringSession")
        self._thread.start()
        self.set_interval(self._session.config.poll_interval, self._check_for_updates)

    def _run_session(self) -> None:
        try:
            self._session.run()
        except LaunchFailure as e:
            self.error = e
            self.call_from_thread(self.exit, return_code=1)

    def _enqueue(self, records: list[ProcessRecord], final: bool) -> None:
        self._update_queue.put((records, final))

    def _check_for_updates(self) -> None:
        """Drain the queue and show the most recent snapshot."""
        latest = None
        while True:
            try:
                latest = self._update_queue.get_nowait()
            except Empty:
                break

        if latest is not None:
            records, final = latest
            if final:
                self.final_records = records
                self.sub_title = "Finished - press q to quit"
            self._update_ui(records)

        if self._quitting and (self.final_records is not None or not self._session_running()):
            self.exit()

    def _session_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _update_ui(self, records: list[ProcessRecord]) -> None:
        try:
            header = self.query_one("#session-header", SessionHeader)
            header.update_stats(records, self._session.state, self._session.degraded)
            self.query_one(RecordTable).update_records(records)
        except Exception:
            logger.debug("Display update skipped", exc_info=True)

    def action_quit(self) -> None:
        """Stop the session; the app exits once the final snapshot has arrived."""
        self._session.stop()
        self._quitting = True
        self.sub_title = "Stopping..."
        if not self._session_running():
            self.exit()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proclineage",
        description="Launch a program and record every process it spawns.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help="Reconciliation interval in seconds (default: %(default)s)",
    )
    parser.add_argument("--attach", type=int, metavar="PID", help="Monitor an already running process")
    parser.add_argument("--no-ui", action="store_true", help="Run without the live display")
    parser.add_argument("--json", metavar="PATH", help="Write the final records as JSON")
    parser.add_argument("--log-file", metavar="PATH", help="Write log output to a file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Program and arguments to launch")
    return parser


def configure_logging(args: argparse.Namespace) -> None:
    if args.log_file:
        handler: logging.Handler = logging.FileHandler(args.log_file)
    elif args.no_ui:
        handler = logging.StreamHandler(sys.stderr)
    else:
        handler = TextualHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, handlers=[handler])


def main(argv: list[str] | None = None) -> int:
    """Entry point for the proclineage command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command[1:] if args.command[:1] == ["--"] else args.command

    try:
        config = SessionConfig(command=command, attach_pid=args.attach, poll_interval=args.interval)
    except ValueError as e:
        parser.error(str(e))
    configure_logging(args)

    session = MonitoringSession(config)
    if args.no_ui:
        previous = signal.signal(signal.SIGINT, lambda signum, frame: session.stop())
        try:
            records = session.run()
        except LaunchFailure as e:
            print(f"proclineage: {e}", file=sys.stderr)
            return 1
        finally:
            signal.signal(signal.SIGINT, previous)
    else:
        app = ProcLineageApp(session)
        app.run()
        if app.error is not None:
            print(f"proclineage: {app.error}", file=sys.stderr)
            return 1
        records = app.final_records or session.snapshot()

    print_report(records)
    if args.json:
        write_json_report(records, args.json)
    return 0


if __name__ == "__main__":
    sys.exit(main())
