"""Staged clone pipeline driving pg_dump, pg_restore and psql."""
import re
import tempfile
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from ..core.config import Config
from ..core.exceptions import (
    Cancelled,
    CatalogError,
    ProcessFailed,
    SpawnFailed,
    StorageError,
    ToolNotFound,
    ValidationError,
    VerificationMismatch,
)
from ..core.logging import get_logger
from ..domain.interfaces import ProcessRunnerInterface, ProfileStoreInterface
from ..domain.models import (
    CloneHistoryEntry,
    CloneOptions,
    CloneStage,
    CloneStatus,
    CloneType,
    ConnectionProfile,
    LogLevel,
    TableInfo,
    ToolPaths,
    new_id,
    utc_now,
)
from ..domain.process import ProcessHandle
from ..infrastructure.parallel import parse_parallel_jobs
from ..infrastructure.pg_tools import quote_literal, table_pattern
from .catalog import SYSTEM_SCHEMA_FILTER, SchemaCatalogReader, psql_base_args
from .history import HistoryRecorder
from .progress import (
    COPY_DONE_RE,
    DUMP_TABLE_RE,
    RESTORE_TABLE_RE,
    LineProgressEstimator,
    ProgressReporter,
    StagePlan,
    classify_tool_line,
)
from .verification import CloneVerifier, normalize_table_names

logger = get_logger(__name__)

# Session settings applied before a plain data dump is replayed
RESTORE_SESSION_SETTINGS = (
    "SET synchronous_commit = off; "
    "SET work_mem = '256MB'; "
    "SET maintenance_work_mem = '512MB';"
)

_UNSAFE_FILE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

# Failures with a user facing message; anything else is logged with a traceback
EXPECTED_ERRORS = (ToolNotFound, SpawnFailed, ProcessFailed, StorageError, OSError)

# psql error when a kept table has a foreign key to a truncated one
TRUNCATE_FK_ERROR = "cannot truncate a table referenced in a foreign key constraint"


def backup_file_name(database: str, started_at: datetime) -> str:
    """Name of the pre-clone backup: destination database plus run start time."""
    safe_name = _UNSAFE_FILE_CHARS.sub("_", database) or "database"
    return f"{safe_name}_backup_{started_at.strftime('%Y%m%d_%H%M%S')}.sql"


def clean_schemas_sql() -> str:
    """Drop every user schema and recreate an empty public schema."""
    return f"""DO $pgclone$
DECLARE
    r record;
BEGIN
    FOR r IN SELECT n.nspname FROM pg_catalog.pg_namespace n WHERE {SYSTEM_SCHEMA_FILTER.strip()}
    LOOP
        EXECUTE format('DROP SCHEMA %I CASCADE', r.nspname);
    END LOOP;
    CREATE SCHEMA IF NOT EXISTS public;
END
$pgclone$;"""


def truncate_tables_sql(exclude_tables: List[str]) -> str:
    """Truncate every user table in one statement, keeping excluded tables."""
    condition = ""
    if exclude_tables:
        names = ", ".join(quote_literal(name) for name in normalize_table_names(exclude_tables))
        condition = f"\n      AND format('%s.%s', schemaname, tablename) NOT IN ({names})"
    return f"""DO $pgclone$
DECLARE
    tables text;
BEGIN
    SELECT string_agg(format('%I.%I', schemaname, tablename), ', ')
      INTO tables
      FROM pg_catalog.pg_tables
     WHERE schemaname NOT IN ('pg_catalog', 'information_schema'){condition};
    IF tables IS NOT NULL THEN
        EXECUTE 'TRUNCATE TABLE ' || tables;
    END IF;
END
$pgclone$;"""


class CloneOrchestrator:
    """One clone run, from preparing to a terminal state.

    ``prepare`` validates the request synchronously and raises
    ValidationError without touching any database. ``run`` then walks the
    planned stages in order, publishing every transition through the
    reporter, and always ends with a terminal progress snapshot, one history
    entry and a closed reporter. ``cancel`` may be called from any thread.
    """

    def __init__(
        self,
        options: CloneOptions,
        profiles: ProfileStoreInterface,
        recorder: HistoryRecorder,
        runner: ProcessRunnerInterface,
        tools: ToolPaths,
        config: Config,
        reporter: Optional[ProgressReporter] = None,
        clock: Callable[[], datetime] = utc_now,
        run_id: Optional[str] = None
    ):
        self.options = options
        self.profiles = profiles
        self.recorder = recorder
        self.runner = runner
        self.tools = tools
        self.config = config
        self.reporter = reporter or ProgressReporter()
        self.clock = clock
        self.run_id = run_id or new_id()

        self.source: Optional[ConnectionProfile] = None
        self.destination: Optional[ConnectionProfile] = None
        self.plan: Optional[StagePlan] = None
        self.backup_path: Optional[Path] = None
        self.failure_hint: Optional[str] = None
        self.source_tables: Optional[List[TableInfo]] = None

        self._dump_path: Optional[Path] = None
        self._started_at: Optional[datetime] = None
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._current: Optional[ProcessHandle] = None

    # Lifecycle

    def prepare(self) -> None:
        """Validate the request and take the profile snapshots.

        Raises:
            ValidationError: If source and destination are the same or a
                profile does not exist
        """
        options = self.options
        if options.source_id == options.destination_id:
            raise ValidationError("Source and destination must be different connections")

        source = self.profiles.get_profile(options.source_id)
        if source is None:
            raise ValidationError(f"Source connection not found: {options.source_id}")
        destination = self.profiles.get_profile(options.destination_id)
        if destination is None:
            raise ValidationError(f"Destination connection not found: {options.destination_id}")

        # Credentials are read once; later profile edits do not affect this run
        self.source = source.snapshot()
        self.destination = destination.snapshot()
        self.plan = StagePlan.for_clone(options.clone_type, options.create_backup, options.clean_destination)
        self.reporter.set_plan(self.plan)

    def run(self) -> CloneHistoryEntry:
        """Execute the pipeline and return the recorded history entry."""
        if self.source is None:
            self.prepare()

        self._started_at = self.clock()
        status = CloneStatus.SUCCESS
        error_message = None

        try:
            self._prepare_stage()
            if self.options.create_backup:
                self._backup_stage()
            if self.options.clean_destination:
                self._cleaning_stage()
            self._dumping_stage()
            self._restoring_stage()
            self._verifying_stage()
            self._check_cancelled()
            self.reporter.complete(
                f"Clone completed successfully: {self.source.name} -> {self.destination.name}"
            )
        except Cancelled:
            status = CloneStatus.CANCELLED
            self.reporter.cancel("Clone cancelled by user")
        except Exception as e:
            if self._cancel_event.is_set():
                status = CloneStatus.CANCELLED
                self.reporter.cancel("Clone cancelled by user")
            else:
                status = CloneStatus.ERROR
                error_message = self._failure_message(e)
                if not isinstance(e, EXPECTED_ERRORS):
                    logger.exception(f"Unexpected error in clone {self.run_id}")
                self.reporter.fail(error_message)
        finally:
            self._remove_dump()

        entry = self.recorder.build(
            run_id=self.run_id,
            source=self.source,
            destination=self.destination,
            clone_type=self.options.clone_type,
            status=status,
            started_at=self._started_at,
            logs=self.reporter.lines,
            error_message=error_message,
            backup_path=str(self.backup_path) if self.backup_path else None
        )
        try:
            self.recorder.save(entry)
        except StorageError as e:
            self.reporter.warning(f"Could not save clone history: {str(e)}")
        finally:
            self.reporter.close()
        return entry

    def cancel(self) -> None:
        """Request cancellation and kill the running tool, if any."""
        if self._cancel_event.is_set():
            return
        logger.info(f"Cancellation requested for clone {self.run_id}")
        self._cancel_event.set()
        with self._lock:
            handle = self._current
        if handle is not None:
            handle.kill()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # Stages

    def _prepare_stage(self) -> None:
        self.reporter.stage(
            CloneStage.PREPARING,
            f"Preparing {self.options.clone_type.value} clone: {self.source.name} -> {self.destination.name}"
        )
        missing = self.tools.missing()
        if missing:
            for name in missing[1:]:
                self.reporter.error(f"{name} not found")
            raise ToolNotFound(missing[0])
        self.reporter.info(f"Source: {self.source.database} on {self.source.host}:{self.source.port}")
        self.reporter.info(
            f"Destination: {self.destination.database} on {self.destination.host}:{self.destination.port}"
        )
        if self.options.exclude_tables:
            self.reporter.info(f"Excluding tables: {', '.join(self.options.exclude_tables)}")

        # Best effort: drives sub-progress and verification
        catalog = SchemaCatalogReader(self.runner, self.tools.psql)
        try:
            self.source_tables = catalog.list_tables(self.source, on_start=self._track)
            self.reporter.info(f"Source has {len(self.source_tables)} table(s)")
        except CatalogError as e:
            self.reporter.warning(f"Could not read source catalog: {str(e)}")
        self._check_cancelled()

    def _backup_stage(self) -> None:
        self._check_cancelled()
        self.reporter.stage(CloneStage.BACKUP, f"Creating backup of {self.destination.database}")
        path = self.config.backup_dir / backup_file_name(self.destination.database, self._started_at)
        path.parent.mkdir(parents=True, exist_ok=True)

        args = ["-d", self.destination.conninfo, "-Fp", f"--file={path}"]
        try:
            self._run_tool(self.tools.pg_dump, args, self.destination, "pg_dump")
        except ProcessFailed as e:
            # A partial backup is not recovery material
            self._unlink(path)
            raise e.with_stage(CloneStage.BACKUP.value)
        except Cancelled:
            self._unlink(path)
            raise

        self.backup_path = path
        self.reporter.success(f"Backup created: {path}")

    def _cleaning_stage(self) -> None:
        self._check_cancelled()
        self.reporter.stage(CloneStage.CLEANING, f"Cleaning destination {self.destination.database}")
        if self.options.clone_type is CloneType.DATA:
            sql = truncate_tables_sql(self.options.exclude_tables)
            done = "Destination tables truncated"
        else:
            sql = clean_schemas_sql()
            done = "Destination schemas dropped"

        args = psql_base_args(self.destination) + ["-q", "-c", sql]
        try:
            self._run_tool(self.tools.psql, args, self.destination, "psql")
        except ProcessFailed as e:
            if self.options.clone_type is CloneType.DATA and any(TRUNCATE_FK_ERROR in line for line in e.stderr_tail):
                self.failure_hint = (
                    "An excluded table has a foreign key to a table that would be truncated. "
                    "Excluded tables are never modified: include the referencing table, "
                    "or clone without cleaning the destination."
                )
            raise e.with_stage(CloneStage.CLEANING.value)
        self.reporter.info(done)

    def _dumping_stage(self) -> None:
        self._check_cancelled()
        self.reporter.stage(CloneStage.DUMPING, f"Dumping {self.source.database}")
        clone_type = self.options.clone_type
        custom_format = clone_type is not CloneType.DATA

        suffix = ".dump" if custom_format else ".sql"
        temp_dir = self.config.temp_dir or Path(tempfile.gettempdir())
        temp_dir.mkdir(parents=True, exist_ok=True)
        self._dump_path = temp_dir / f"pg_clone_{uuid.uuid4()}{suffix}"

        args = ["--verbose", "-d", self.source.conninfo, f"--file={self._dump_path}"]
        if custom_format:
            args += ["-Fc", "-Z", str(self.config.clone.compression_level)]
        else:
            args += ["-Fp"]
        if clone_type is CloneType.STRUCTURE:
            args.append("--schema-only")
        elif clone_type is CloneType.DATA:
            args.append("--data-only")
            if self.config.clone.disable_triggers:
                args.append("--disable-triggers")
        for table in self.options.exclude_tables:
            args.append(f"--exclude-table={table_pattern(table)}")

        estimator = LineProgressEstimator(DUMP_TABLE_RE, self._expected_data_tables())
        try:
            self._run_tool(
                self.tools.pg_dump, args, self.source, "pg_dump",
                on_line=estimator.observer(self.reporter, lambda n, total: f"Dumped table {n} of {total}")
            )
        except ProcessFailed as e:
            raise e.with_stage(CloneStage.DUMPING.value)
        self.reporter.info("Dump completed")

    def _restoring_stage(self) -> None:
        self._check_cancelled()
        self.reporter.stage(CloneStage.RESTORING, f"Restoring into {self.destination.database}")
        if self.options.clone_type is CloneType.DATA:
            self._restore_plain()
        else:
            self._restore_custom()

    def _restore_custom(self) -> None:
        jobs = parse_parallel_jobs(self.config.clone.parallel_jobs)
        self.reporter.info(f"Running pg_restore with {jobs} parallel job(s)")
        args = [
            "--verbose",
            "-d", self.destination.conninfo,
            "-j", str(jobs),
            "--no-owner",
            "--no-privileges",
            str(self._dump_path),
        ]

        estimator = LineProgressEstimator(RESTORE_TABLE_RE, self._expected_data_tables())
        progress_observer = estimator.observer(
            self.reporter, lambda n, total: f"Restored table {n} of {total}"
        )
        errors: List[str] = []

        def on_line(tool: str, stream: str, line: str) -> None:
            if classify_tool_line(line) is LogLevel.ERROR:
                errors.append(line)
            progress_observer(tool, stream, line)

        try:
            self._run_tool(self.tools.pg_restore, args, self.destination, "pg_restore", on_line=on_line)
        except ProcessFailed as e:
            if errors:
                raise e.with_stage(CloneStage.RESTORING.value)
            # Nonzero exit with warnings only: the restore went through
            self.reporter.warning(f"pg_restore finished with warnings (exit code {e.exit_code})")
            return
        self.reporter.info("Restore completed")

    def _restore_plain(self) -> None:
        args = psql_base_args(self.destination) + [
            "-c", RESTORE_SESSION_SETTINGS,
            "-f", str(self._dump_path),
        ]
        estimator = LineProgressEstimator(COPY_DONE_RE, self._expected_data_tables())
        try:
            self._run_tool(
                self.tools.psql, args, self.destination, "psql",
                on_line=estimator.observer(self.reporter, lambda n, total: f"Loaded table {n} of {total}")
            )
        except ProcessFailed as e:
            raise e.with_stage(CloneStage.RESTORING.value)
        self.reporter.info("Restore completed")

    def _verifying_stage(self) -> None:
        self._check_cancelled()
        self.reporter.stage(CloneStage.VERIFYING, f"Verifying {self.destination.database}")
        verifier = CloneVerifier(
            SchemaCatalogReader(self.runner, self.tools.psql),
            sample_size=self.config.clone.verify_sample_size
        )
        try:
            summary = verifier.verify(
                self.source,
                self.destination,
                self.source_tables,
                self.options.exclude_tables,
                compare_rows=self.options.clone_type.includes_data,
                on_start=self._track
            )
        except (VerificationMismatch, CatalogError) as e:
            # Concurrent writes on a live source can cause drift
            self.reporter.warning(f"Verification: {str(e)}")
            return
        self.reporter.info(summary)

    # Helpers

    def _run_tool(
        self,
        executable: str,
        args: List[str],
        profile: ConnectionProfile,
        tool: str,
        on_line=None
    ) -> None:
        try:
            self.runner.run(
                executable,
                args,
                env=profile.env(),
                on_line=on_line or self.reporter.tool_line,
                tool=tool,
                on_start=self._track
            )
        finally:
            with self._lock:
                self._current = None

    def _track(self, handle: ProcessHandle) -> None:
        """Remember the running tool so cancel() can kill it."""
        with self._lock:
            self._current = handle
        if self._cancel_event.is_set():
            handle.kill()

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise Cancelled("Clone cancelled by user")

    def _expected_data_tables(self) -> int:
        """Tables whose data the dump will contain, 0 when unknown."""
        if self.source_tables is None or not self.options.clone_type.includes_data:
            return 0
        excluded = set(normalize_table_names(self.options.exclude_tables))
        return len([t for t in self.source_tables if t.qualified_name not in excluded])

    def _failure_message(self, error: Exception) -> str:
        message = str(error) or type(error).__name__
        if self.failure_hint:
            message += f"\n{self.failure_hint}"
        if self.backup_path is not None:
            message += f"\nA backup of the destination was saved before the clone: {self.backup_path}"
        return message

    def _remove_dump(self) -> None:
        if self._dump_path is not None:
            self._unlink(self._dump_path)
            self._dump_path = None

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            logger.warning(f"Could not remove {path}: {str(e)}")
