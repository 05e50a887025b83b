"""Abstract interfaces for the PostgreSQL clone tool."""
from abc import ABC, abstractmethod
from typing import Callable, List, Mapping, Optional, Sequence

from ..core.exceptions import Cancelled, ProcessFailed
from .models import CloneHistoryEntry, ConnectionProfile
from .process import ProcessHandle, ProcessResult

# Called for every line a child writes: (tool, stream name, line)
LineObserver = Callable[[str, str, str], None]


class ProcessRunnerInterface(ABC):
    """Interface for spawning external tools."""

    @abstractmethod
    def start(
        self,
        executable: str,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        on_line: Optional[LineObserver] = None,
        tool: Optional[str] = None
    ) -> ProcessHandle:
        """Spawn a process and return its handle without waiting for it."""
        # Implementation contract: raise ToolNotFound if the executable cannot be
        # resolved, SpawnFailed if the OS refuses to start it; forward every line
        # to on_line before pushing it to the handle's stream
        pass

    def run(
        self,
        executable: str,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        on_line: Optional[LineObserver] = None,
        tool: Optional[str] = None,
        on_start: Optional[Callable[[ProcessHandle], None]] = None
    ) -> ProcessResult:
        """Run a process to completion and collect its output.

        Args:
            on_start: Receives the handle right after spawn, so the caller
                can kill it from another thread

        Raises:
            Cancelled: If the process was killed through its handle
            ProcessFailed: If the process exited with a nonzero status
        """
        handle = self.start(executable, args, env=env, cwd=cwd, on_line=on_line, tool=tool)
        if on_start:
            on_start(handle)
        stdout = handle.stdout.read_all()
        stderr = handle.stderr.read_all()
        exit_status = handle.wait()
        result = ProcessResult(tool=handle.tool, exit=exit_status, stdout=stdout, stderr=stderr)
        if exit_status.terminated:
            raise Cancelled(f"{handle.tool} was terminated")
        if not exit_status.success:
            raise ProcessFailed(handle.tool, exit_status.code, handle.stderr.tail)
        return result


class ProfileStoreInterface(ABC):
    """Lookup of connection profiles by id."""

    @abstractmethod
    def get_profile(self, profile_id: str) -> Optional[ConnectionProfile]:
        """Return the profile or None when it does not exist."""
        pass

    @abstractmethod
    def list_profiles(self) -> List[ConnectionProfile]:
        """Return all profiles."""
        pass


class HistoryStoreInterface(ABC):
    """Durable storage for clone history."""

    @abstractmethod
    def add_history(self, entry: CloneHistoryEntry) -> None:
        """Persist a finished run, newest first."""
        pass

    @abstractmethod
    def list_history(self) -> List[CloneHistoryEntry]:
        """Return history entries, newest first."""
        pass

    @abstractmethod
    def get_history_entry(self, entry_id: str) -> Optional[CloneHistoryEntry]:
        """Return one history entry or None."""
        pass

    @abstractmethod
    def clear_history(self) -> None:
        """Delete every history entry."""
        pass
