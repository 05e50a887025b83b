"""Builds and stores the history entry of a finished clone run."""
from datetime import datetime
from typing import Callable, Optional, Sequence

from ..core.exceptions import StorageError
from ..core.logging import get_logger
from ..domain.interfaces import HistoryStoreInterface
from ..domain.models import CloneHistoryEntry, CloneStatus, CloneType, ConnectionProfile, LogLine, utc_now

logger = get_logger(__name__)


class HistoryRecorder:
    """Creates exactly one immutable history entry per finished clone."""

    def __init__(self, store: HistoryStoreInterface, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def build(
        self,
        run_id: str,
        source: ConnectionProfile,
        destination: ConnectionProfile,
        clone_type: CloneType,
        status: CloneStatus,
        started_at: datetime,
        logs: Sequence[LogLine],
        error_message: Optional[str] = None,
        backup_path: Optional[str] = None
    ) -> CloneHistoryEntry:
        """Build the entry of a finished run.

        Profile names are copied from the run's snapshots so the entry stays
        readable after a profile is renamed or deleted.
        """
        completed_at = self.clock()
        return CloneHistoryEntry(
            id=run_id,
            source_id=source.id,
            source_name=source.name,
            destination_id=destination.id,
            destination_name=destination.name,
            clone_type=clone_type,
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            duration=max(0, int((completed_at - started_at).total_seconds())),
            error_message=error_message,
            logs=tuple(logs),
            backup_path=backup_path
        )

    def save(self, entry: CloneHistoryEntry) -> None:
        """Hand the entry to the history store.

        Raises:
            StorageError: If the store cannot persist the entry
        """
        try:
            self.store.add_history(entry)
        except StorageError:
            logger.error(f"Failed to save history entry {entry.id}")
            raise
        logger.info(f"Clone {entry.id} finished with status {entry.status.value} after {entry.duration}s")
