"""Plain ASCII interface implementation."""
import sys
from typing import IO, List, Optional

from ..core.logging import get_logger
from ..domain.models import (
    CloneHistoryEntry,
    CloneProgress,
    ConnectionProfile,
    DatabaseInfo,
    DatabaseStructure,
    LogLevel,
    SavedOperation,
    ToolPaths,
)
from ..services.progress import LogEvent, ProgressEvent
from .formatting import format_duration, format_size, format_timestamp

logger = get_logger(__name__)


class ASCIIInterface:
    """Line oriented output for terminals without rich rendering and for logs."""

    def __init__(self, show_logs: bool = True, stream: Optional[IO[str]] = None, stderr: bool = False):
        self.show_logs = show_logs
        self.stream = stream or (sys.stderr if stderr else sys.stdout)
        self._last_percent = -1

    def _write(self, text: str = "") -> None:
        self.stream.write(text + "\n")
        self.stream.flush()

    def follow_run(self, handle) -> Optional[CloneProgress]:
        """Print a run's progress and log lines until it finishes.

        Returns:
            The terminal progress snapshot
        """
        last = None
        for event in handle.subscribe():
            if isinstance(event, ProgressEvent):
                last = event.progress
                self.display_progress(event.progress)
            elif isinstance(event, LogEvent) and self.show_logs:
                if event.line.source and event.line.level is LogLevel.INFO:
                    # Raw tool chatter stays in the log file
                    continue
                self._write(f"  {event.line.format()}")
        return last

    def display_progress(self, progress: CloneProgress) -> None:
        if progress.progress == self._last_percent and not progress.is_complete:
            return
        self._last_percent = progress.progress
        bar_length = 40
        filled_length = int(bar_length * progress.progress / 100)
        bar = '=' * filled_length + '-' * (bar_length - filled_length)
        self._write(f"[{bar}] {progress.progress:3d}% {progress.stage.value}: {progress.message}")

    def display_message(self, message: str) -> None:
        self._write(message)

    def display_error(self, message: str) -> None:
        self._write(f"Error: {message}")

    def display_schema_saved(self, path: str, size: int) -> None:
        self._write(f"Schema written to {path} ({format_size(size)})")

    def display_history(self, entries: List[CloneHistoryEntry]) -> None:
        if not entries:
            self._write("No clone history.")
            return
        self._write(f"{'Started':19}  {'Status':9}  {'Type':9}  {'Duration':8}  Source -> Destination  [id]")
        for entry in entries:
            self._write(
                f"{format_timestamp(entry.started_at):19}  {entry.status.value:9}  "
                f"{entry.clone_type.value:9}  {format_duration(entry.duration):8}  "
                f"{entry.source_name} -> {entry.destination_name}  [{entry.id}]"
            )

    def display_history_entry(self, entry: CloneHistoryEntry) -> None:
        self._write(f"Clone {entry.id}")
        self._write(f"  Source:      {entry.source_name} ({entry.source_id})")
        self._write(f"  Destination: {entry.destination_name} ({entry.destination_id})")
        self._write(f"  Type:        {entry.clone_type.value}")
        self._write(f"  Status:      {entry.status.value}")
        self._write(f"  Started:     {format_timestamp(entry.started_at)}")
        self._write(f"  Completed:   {format_timestamp(entry.completed_at)}")
        self._write(f"  Duration:    {format_duration(entry.duration)}")
        if entry.backup_path:
            self._write(f"  Backup:      {entry.backup_path}")
        if entry.error_message:
            self._write(f"  Error:       {entry.error_message}")
        self._write("  Log:")
        for line in entry.logs:
            self._write(f"    {format_timestamp(line.timestamp)} {line.format()}")

    def display_structure(self, structure: DatabaseStructure) -> None:
        for schema in structure.schemas:
            self._write(f"{schema.name} ({schema.table_count} tables)")
            for table in structure.tables_in(schema.name):
                self._write(f"  {table.name:40} ~{table.row_count} rows  {format_size(table.size)}")

    def display_database_info(self, info: DatabaseInfo) -> None:
        self._write(f"Server:   {info.version}")
        self._write(f"Size:     {format_size(info.total_size)}")
        self._write(f"Tables:   {len(info.tables)}")

    def display_tools(self, tools: ToolPaths, version: Optional[str]) -> None:
        for name in ("psql", "pg_dump", "pg_restore"):
            self._write(f"{name:10} {getattr(tools, name) or 'not found'}")
        if version:
            self._write(f"Version:   {version}")

    def display_profiles(self, profiles: List[ConnectionProfile]) -> None:
        if not profiles:
            self._write("No connection profiles.")
            return
        for profile in profiles:
            ssl = " ssl" if profile.ssl else ""
            self._write(
                f"{profile.id}  {profile.name}  {profile.user}@{profile.host}:{profile.port}/{profile.database}{ssl}"
            )

    def display_operations(self, operations: List[SavedOperation]) -> None:
        if not operations:
            self._write("No saved operations.")
            return
        for operation in operations:
            flags = []
            if operation.clean_destination:
                flags.append("clean")
            if operation.create_backup:
                flags.append("backup")
            if operation.exclude_tables:
                flags.append(f"exclude={','.join(operation.exclude_tables)}")
            self._write(
                f"{operation.id}  {operation.name}  {operation.clone_type.value}  "
                f"{operation.source_id} -> {operation.destination_id}  {' '.join(flags)}"
            )
