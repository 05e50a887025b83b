"""Entry point for clone and schema runs."""
import threading
from concurrent.futures import Future
from datetime import datetime
from typing import Any, Callable, List, Optional

from ..core.config import Config
from ..core.exceptions import EngineBusy, ToolNotFound, ValidationError
from ..core.logging import get_logger
from ..domain.interfaces import ProcessRunnerInterface
from ..domain.models import (
    CloneHistoryEntry,
    CloneOptions,
    CloneProgress,
    DatabaseInfo,
    DatabaseStructure,
    SavedOperation,
    SchemaExportOptions,
    ToolPaths,
    new_id,
    utc_now,
)
from ..infrastructure.pg_tools import client_version, detect_tools
from ..infrastructure.process import ProcessRunner
from ..infrastructure.storage import JSONAppStore
from .catalog import SchemaCatalogReader
from .clone import CloneOrchestrator
from .history import HistoryRecorder
from .progress import EventStream, ProgressReporter
from .schema import SchemaExtractor

logger = get_logger(__name__)


class RunHandle:
    """A clone or schema run executing on a worker thread."""

    def __init__(self, run_id: str, kind: str, reporter: ProgressReporter, canceller: Callable[[], None]):
        self.id = run_id
        self.kind = kind
        self.reporter = reporter
        self._canceller = canceller
        self._future: "Future[Any]" = Future()

    def subscribe(self) -> EventStream:
        """Event stream of this run, starting with its latest progress."""
        return self.reporter.subscribe()

    def cancel(self) -> None:
        self._canceller()

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def last_progress(self) -> Optional[CloneProgress]:
        return self.reporter.last_progress

    def result(self, timeout: Optional[float] = None) -> Any:
        """History entry of a clone, SQL text of a schema export.

        Raises:
            TimeoutError: If the run has not finished within the timeout
            Exception: Whatever ended a schema export (ToolNotFound,
                ProcessFailed, Cancelled)
        """
        return self._future.result(timeout=timeout)


class CloneEngine:
    """Runs at most one clone or schema export at a time.

    Requests are validated synchronously (ValidationError, EngineBusy) and
    then executed on a worker thread; progress and logs are consumed through
    the returned RunHandle.
    """

    def __init__(
        self,
        config: Config,
        store: JSONAppStore,
        runner: Optional[ProcessRunnerInterface] = None,
        tools: Optional[ToolPaths] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """Initialize the engine.

        Args:
            config: Application configuration
            store: Profiles, history and saved operations
            runner: Process runner (defaults to the subprocess based one)
            tools: Fixed tool paths; detected before every run when omitted
            clock: Time source for run timestamps
        """
        self.config = config
        self.store = store
        self.runner = runner or ProcessRunner()
        self._tools = tools
        self.clock = clock
        self.recorder = HistoryRecorder(store, clock=clock)
        self._slot = threading.Lock()
        self._state_lock = threading.Lock()
        self._active: Optional[RunHandle] = None

    # Runs

    @property
    def active(self) -> Optional[RunHandle]:
        with self._state_lock:
            return self._active

    def tools(self) -> ToolPaths:
        """Tool paths for the next run."""
        if self._tools is not None:
            return self._tools
        return detect_tools(self.config)

    def start_clone(self, options: CloneOptions) -> RunHandle:
        """Validate the request and start the clone on a worker thread.

        Raises:
            EngineBusy: If another run is active
            ValidationError: If source and destination are the same or a
                profile does not exist
        """
        self._acquire_slot("clone")
        try:
            reporter = ProgressReporter(clock=self.clock)
            orchestrator = CloneOrchestrator(
                options,
                profiles=self.store,
                recorder=self.recorder,
                runner=self.runner,
                tools=self.tools(),
                config=self.config,
                reporter=reporter,
                clock=self.clock
            )
            orchestrator.prepare()
        except Exception:
            self._slot.release()
            raise

        handle = RunHandle(orchestrator.run_id, "clone", reporter, orchestrator.cancel)
        logger.info(
            f"Starting clone {handle.id}: {orchestrator.source.name} -> {orchestrator.destination.name} "
            f"({options.clone_type.value})"
        )
        self._launch(handle, orchestrator.run)
        return handle

    def download_schema(self, options: SchemaExportOptions) -> RunHandle:
        """Validate the request and start a schema export on a worker thread.

        Raises:
            EngineBusy: If another run is active
            ValidationError: If the profile does not exist or the allow-lists
                do not intersect
        """
        self._acquire_slot("schema export")
        try:
            reporter = ProgressReporter(clock=self.clock)
            extractor = SchemaExtractor(self.store, self.runner, self.tools(), reporter=reporter)
            extractor.prepare(options)
        except Exception:
            self._slot.release()
            raise

        handle = RunHandle(new_id(), "schema", reporter, extractor.cancel)
        logger.info(f"Starting schema export {handle.id} of {extractor.profile.name}")
        self._launch(handle, extractor.run)
        return handle

    def cancel(self) -> bool:
        """Cancel the active run; returns False when nothing is running."""
        handle = self.active
        if handle is None:
            return False
        handle.cancel()
        return True

    def _acquire_slot(self, kind: str) -> None:
        if not self._slot.acquire(blocking=False):
            active = self.active
            raise EngineBusy(active.kind if active else kind)

    def _launch(self, handle: RunHandle, work: Callable[[], Any]) -> None:
        with self._state_lock:
            self._active = handle
        thread = threading.Thread(
            target=self._execute,
            args=(handle, work),
            daemon=True,
            name=f"pgclone-{handle.kind}-{handle.id[:8]}"
        )
        try:
            thread.start()
        except RuntimeError:
            with self._state_lock:
                self._active = None
            self._slot.release()
            raise

    def _execute(self, handle: RunHandle, work: Callable[[], Any]) -> None:
        result = None
        error: Optional[BaseException] = None
        try:
            result = work()
        except Exception as e:
            error = e
        finally:
            # Free the slot before waking waiters so they can start the next run
            with self._state_lock:
                self._active = None
            self._slot.release()
        if error is not None:
            handle._future.set_exception(error)
        else:
            handle._future.set_result(result)

    # History

    def get_history(self) -> List[CloneHistoryEntry]:
        return self.store.list_history()

    def get_history_entry(self, entry_id: str) -> Optional[CloneHistoryEntry]:
        return self.store.get_history_entry(entry_id)

    def clear_history(self) -> None:
        self.store.clear_history()

    # Saved operations

    def list_saved_operations(self) -> List[SavedOperation]:
        return self.store.list_saved_operations()

    def save_operation(self, name: str, options: CloneOptions) -> SavedOperation:
        """Store clone options under a name for later reuse.

        Raises:
            ValidationError: If the name is empty
        """
        name = name.strip()
        if not name:
            raise ValidationError("Operation name must not be empty")
        operation = SavedOperation.from_options(name, options)
        self.store.save_operation(operation)
        return operation

    def get_saved_operation(self, id_or_name: str) -> Optional[SavedOperation]:
        return self.store.get_saved_operation(id_or_name)

    def delete_saved_operation(self, id_or_name: str) -> bool:
        return self.store.delete_saved_operation(id_or_name)

    # Catalog

    def _catalog(self) -> SchemaCatalogReader:
        tools = self.tools()
        if not tools.psql:
            raise ToolNotFound("psql")
        return SchemaCatalogReader(self.runner, tools.psql)

    def _profile(self, profile_id: str):
        profile = self.store.get_profile(profile_id)
        if profile is None:
            raise ValidationError(f"Connection not found: {profile_id}")
        return profile

    def get_database_structure(self, profile_id: str) -> DatabaseStructure:
        """Schemas and tables of a database, for choosing export allow-lists.

        Raises:
            ValidationError: If the profile does not exist
            ToolNotFound: If psql cannot be resolved
            CatalogError: If the catalog query fails
        """
        return self._catalog().read_structure(self._profile(profile_id))

    def test_connection(self, profile_id: str) -> DatabaseInfo:
        """Connect and report server version, tables and database size.

        Raises:
            ValidationError: If the profile does not exist
            ToolNotFound: If psql cannot be resolved
            CatalogError: If the connection or query fails
        """
        return self._catalog().read_database_info(self._profile(profile_id))

    def client_version(self) -> Optional[str]:
        tools = self.tools()
        return client_version(tools.psql) if tools.psql else None
