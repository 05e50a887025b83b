"""Custom exceptions for the PostgreSQL clone tool."""
from typing import List, Optional


class ConfigError(Exception):
    """Configuration error."""
    # Raised when the config file is missing, unreadable or holds invalid values
    pass


class StorageError(Exception):
    """Storage operation error."""
    # Raised when the JSON app data file cannot be written
    pass


class ValidationError(Exception):
    """Request validation error."""
    # Raised before any process is spawned: same source/destination,
    # unknown profile, empty allow-list intersection
    pass


class EngineBusy(Exception):
    """Raised when a run is requested while another one is active."""

    def __init__(self, active: str = "operation"):
        super().__init__(f"Another {active} is already running. Wait for it to finish or cancel it.")
        self.active = active


class ToolNotFound(Exception):
    """External PostgreSQL client tool could not be resolved."""

    def __init__(self, tool: str, path: Optional[str] = None):
        if path:
            message = f"{tool} not found at {path}. Please install PostgreSQL client tools."
        else:
            message = f"{tool} not found. Please install PostgreSQL client tools."
        super().__init__(message)
        self.tool = tool
        self.path = path


class SpawnFailed(Exception):
    """The operating system refused to start the external tool."""

    def __init__(self, tool: str, reason: str):
        super().__init__(f"Failed to start {tool}: {reason}")
        self.tool = tool
        self.reason = reason


class ProcessFailed(Exception):
    """External tool exited abnormally.

    Carries the stage the tool ran in, its exit code and the tail of its
    standard error so the user can act on the tool's own diagnostics.
    """

    def __init__(
        self,
        tool: str,
        exit_code: Optional[int],
        stderr_tail: Optional[List[str]] = None,
        stage: Optional[str] = None
    ):
        self.tool = tool
        self.exit_code = exit_code
        self.stderr_tail = list(stderr_tail or [])
        self.stage = stage
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        if self.exit_code is None:
            status = "was killed by a signal"
        elif self.exit_code < 0:
            status = f"was killed by signal {-self.exit_code}"
        else:
            status = f"exited with code {self.exit_code}"
        message = f"{self.tool} {status}"
        if self.stage:
            message = f"{self.stage.capitalize()} failed: {message}"
        if self.stderr_tail:
            message += ":\n" + "\n".join(self.stderr_tail)
        return message

    def with_stage(self, stage: str) -> "ProcessFailed":
        """Return a copy of this error attributed to a pipeline stage."""
        return ProcessFailed(self.tool, self.exit_code, self.stderr_tail, stage)


class VerificationMismatch(Exception):
    """Destination does not match the source after a clone."""
    # Never fatal: the orchestrator downgrades it to a warning log line
    pass


class CatalogError(Exception):
    """Catalog query failed."""
    # Callers fall back to "select all" semantics when this is raised
    pass


class Cancelled(Exception):
    """The run was cancelled by the user."""
    # Not an error: maps to the distinct "cancelled" history status
    pass
