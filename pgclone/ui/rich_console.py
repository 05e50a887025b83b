"""Rich console interface: live progress bar with colored run logs."""
from typing import List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from rich.text import Text

from ..core.logging import get_logger
from ..domain.models import (
    CloneHistoryEntry,
    CloneProgress,
    CloneStatus,
    ConnectionProfile,
    DatabaseInfo,
    DatabaseStructure,
    LogLevel,
    LogLine,
    SavedOperation,
    ToolPaths,
)
from ..services.progress import LogEvent, ProgressEvent
from .formatting import format_duration, format_size, format_timestamp

logger = get_logger(__name__)

LEVEL_STYLES = {
    LogLevel.INFO: "white",
    LogLevel.SUCCESS: "bold green",
    LogLevel.WARNING: "yellow",
    LogLevel.ERROR: "bold red",
}

STATUS_STYLES = {
    CloneStatus.SUCCESS: "green",
    CloneStatus.ERROR: "red",
    CloneStatus.CANCELLED: "yellow",
}


class RichInterface:
    """Rich based command line interface."""

    def __init__(self, show_logs: bool = True, console: Optional[Console] = None, stderr: bool = False):
        self.show_logs = show_logs
        self.console = console or Console(stderr=stderr)

    def _log_text(self, line: LogLine) -> Text:
        text = Text()
        text.append(line.timestamp.astimezone().strftime("%H:%M:%S") + " ", style="dim")
        if line.source:
            text.append(f"{line.source}: ", style="cyan")
        text.append(line.message, style=LEVEL_STYLES.get(line.level, "white"))
        return text

    def follow_run(self, handle) -> Optional[CloneProgress]:
        """Render a run's progress until it finishes.

        Returns:
            The terminal progress snapshot
        """
        progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(complete_style="green", finished_style="bright_green"),
            TaskProgressColumn(),
            TextColumn("•"),
            TimeElapsedColumn(),
            console=self.console,
            transient=False
        )
        last = None
        with progress:
            task_id = progress.add_task("preparing", total=100)
            for event in handle.subscribe():
                if isinstance(event, ProgressEvent):
                    last = event.progress
                    progress.update(
                        task_id,
                        completed=event.progress.progress,
                        description=f"{event.progress.stage.value}: {event.progress.message}"[:60]
                    )
                elif isinstance(event, LogEvent) and self.show_logs:
                    if event.line.source and event.line.level is LogLevel.INFO:
                        continue
                    progress.console.print(self._log_text(event.line))
        if last is not None:
            self._print_outcome(last)
        return last

    def _print_outcome(self, last: CloneProgress) -> None:
        if last.is_error:
            self.console.print(Panel(last.message, title="Failed", border_style="red"))
        elif last.is_cancelled:
            self.console.print(Panel(last.message, title="Cancelled", border_style="yellow"))
        else:
            self.console.print(Panel(last.message, title="Completed", border_style="green"))

    def display_message(self, message: str) -> None:
        self.console.print(message)

    def display_error(self, message: str) -> None:
        self.console.print(f"[bold red]Error:[/bold red] {message}")

    def display_schema_saved(self, path: str, size: int) -> None:
        self.console.print(f"[green]Schema written to[/green] {path} ({format_size(size)})")

    def display_history(self, entries: List[CloneHistoryEntry]) -> None:
        if not entries:
            self.console.print("No clone history.")
            return
        table = Table(title="Clone History", box=box.ROUNDED)
        table.add_column("Started")
        table.add_column("Status")
        table.add_column("Type")
        table.add_column("Duration", justify="right")
        table.add_column("Source")
        table.add_column("Destination")
        table.add_column("ID", style="dim")
        for entry in entries:
            table.add_row(
                format_timestamp(entry.started_at),
                Text(entry.status.value, style=STATUS_STYLES.get(entry.status, "white")),
                entry.clone_type.value,
                format_duration(entry.duration),
                entry.source_name,
                entry.destination_name,
                entry.id
            )
        self.console.print(table)

    def display_history_entry(self, entry: CloneHistoryEntry) -> None:
        details = Table(box=box.ROUNDED, show_header=False)
        details.add_column("Field", style="bold")
        details.add_column("Value")
        details.add_row("Source", f"{entry.source_name} ({entry.source_id})")
        details.add_row("Destination", f"{entry.destination_name} ({entry.destination_id})")
        details.add_row("Type", entry.clone_type.value)
        details.add_row("Status", Text(entry.status.value, style=STATUS_STYLES.get(entry.status, "white")))
        details.add_row("Started", format_timestamp(entry.started_at))
        details.add_row("Completed", format_timestamp(entry.completed_at))
        details.add_row("Duration", format_duration(entry.duration))
        if entry.backup_path:
            details.add_row("Backup", entry.backup_path)
        if entry.error_message:
            details.add_row("Error", Text(entry.error_message, style="red"))
        self.console.print(Panel(details, title=f"Clone {entry.id}", border_style="cyan"))
        for line in entry.logs:
            self.console.print(self._log_text(line))

    def display_structure(self, structure: DatabaseStructure) -> None:
        table = Table(title="Database Structure", box=box.ROUNDED)
        table.add_column("Schema")
        table.add_column("Table")
        table.add_column("Rows (est.)", justify="right")
        table.add_column("Size", justify="right")
        for schema in structure.schemas:
            tables = structure.tables_in(schema.name)
            if not tables:
                table.add_row(schema.name, Text("(no tables)", style="dim"), "", "")
            for info in tables:
                table.add_row(schema.name, info.name, str(info.row_count), format_size(info.size))
        self.console.print(table)

    def display_database_info(self, info: DatabaseInfo) -> None:
        details = Table(box=box.ROUNDED, show_header=False)
        details.add_column("Field", style="bold")
        details.add_column("Value")
        details.add_row("Server", info.version)
        details.add_row("Size", format_size(info.total_size))
        details.add_row("Tables", str(len(info.tables)))
        self.console.print(Panel(details, title="Connection OK", border_style="green"))

    def display_tools(self, tools: ToolPaths, version: Optional[str]) -> None:
        table = Table(title="PostgreSQL Client Tools", box=box.ROUNDED)
        table.add_column("Tool")
        table.add_column("Path")
        for name in ("psql", "pg_dump", "pg_restore"):
            path = getattr(tools, name)
            table.add_row(name, path if path else Text("not found", style="bold red"))
        self.console.print(table)
        if version:
            self.console.print(f"Version: {version}")

    def display_profiles(self, profiles: List[ConnectionProfile]) -> None:
        if not profiles:
            self.console.print("No connection profiles.")
            return
        table = Table(title="Connection Profiles", box=box.ROUNDED)
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Server")
        table.add_column("Database")
        table.add_column("SSL")
        for profile in profiles:
            table.add_row(
                profile.id,
                profile.name,
                f"{profile.user}@{profile.host}:{profile.port}",
                profile.database,
                "yes" if profile.ssl else "no"
            )
        self.console.print(table)

    def display_operations(self, operations: List[SavedOperation]) -> None:
        if not operations:
            self.console.print("No saved operations.")
            return
        table = Table(title="Saved Operations", box=box.ROUNDED)
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Source")
        table.add_column("Destination")
        table.add_column("Clean")
        table.add_column("Backup")
        table.add_column("Excluded")
        for operation in operations:
            table.add_row(
                operation.id,
                operation.name,
                operation.clone_type.value,
                operation.source_id,
                operation.destination_id,
                "yes" if operation.clean_destination else "no",
                "yes" if operation.create_backup else "no",
                ", ".join(operation.exclude_tables)
            )
        self.console.print(table)
