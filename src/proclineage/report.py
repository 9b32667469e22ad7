"""Final report rendering for a finished session."""

import json
from collections.abc import Sequence
from pathlib import Path

from rich.console import Console
from rich.table import Table

from proclineage.models import ProcessRecord, ProcessStatus

STATUS_STYLES = {
    ProcessStatus.PENDING: "yellow",
    ProcessStatus.ACTIVE: "green",
    ProcessStatus.TERMINATED: "dim",
}


def short_hash(digest: str, width: int = 16) -> str:
    """Shorten a hex digest for display; sentinels are returned unchanged."""
    if digest.startswith("<") or len(digest) <= width:
        return digest
    return digest[:width] + "…"


def build_report_table(records: Sequence[ProcessRecord], title: str = "Process lineage") -> Table:
    """Build a rich Table with one row per record, in the given order."""
    table = Table(title=title)
    table.add_column("PID", justify="right")
    table.add_column("PPID", justify="right")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("SHA")
    table.add_column("Path", overflow="fold")
    table.add_column("Command", overflow="fold")

    for rec in records:
        table.add_row(
            str(rec.pid),
            "-" if rec.parent_pid is None else str(rec.parent_pid),
            rec.name,
            f"[{STATUS_STYLES[rec.status]}]{rec.status.value}[/]",
            short_hash(rec.content_hash),
            rec.executable_path,
            rec.command_line,
        )
    return table


def print_report(records: Sequence[ProcessRecord], console: Console | None = None) -> None:
    console = console or Console()
    console.print(build_report_table(records))
    exited = sum(1 for rec in records if rec.has_exited)
    console.print(f"{len(records)} processes observed, {exited} terminated")


def write_json_report(records: Sequence[ProcessRecord], path: str | Path) -> None:
    """Write the records to ``path`` as a JSON list."""
    payload = [rec.to_dict() for rec in records]
    Path(path).write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
