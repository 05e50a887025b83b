"""JSON file storage for profiles, clone history and saved operations."""
import json
import os
import threading
from pathlib import Path
from typing import List, Dict, Any, Optional, Union

from ..core.exceptions import StorageError
from ..core.logging import get_logger
from ..domain.interfaces import HistoryStoreInterface, ProfileStoreInterface
from ..domain.models import CloneHistoryEntry, ConnectionProfile, SavedOperation

logger = get_logger(__name__)

DATA_FILE_NAME = "pgclone-data.json"
DEFAULT_HISTORY_LIMIT = 50


def _empty_data() -> Dict[str, Any]:
    return {
        "profiles": [],
        "history": [],
        "tags": [],
        "savedOperations": [],
    }


class JSONAppStore(ProfileStoreInterface, HistoryStoreInterface):
    """App data kept in one pretty-printed JSON document.

    Every operation reads the file, applies its change and writes the whole
    document back under a lock. A missing or unreadable file reads as empty
    data; a failed write raises StorageError.
    """

    def __init__(self, data_dir: Union[Path, str], history_limit: int = DEFAULT_HISTORY_LIMIT):
        self.data_dir = Path(data_dir)
        self.path = self.data_dir / DATA_FILE_NAME
        self.history_limit = max(1, history_limit)
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return _empty_data()
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read {self.path}, starting with empty data: {str(e)}")
            return _empty_data()
        if not isinstance(data, dict):
            logger.warning(f"Unexpected content in {self.path}, starting with empty data")
            return _empty_data()
        for key, value in _empty_data().items():
            data.setdefault(key, value)
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(".json.tmp")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {str(e)}")

    # Profiles

    def get_profile(self, profile_id: str) -> Optional[ConnectionProfile]:
        for profile in self.list_profiles():
            if profile.id == profile_id:
                return profile
        return None

    def list_profiles(self) -> List[ConnectionProfile]:
        with self._lock:
            data = self._load()
        profiles = []
        for raw in data["profiles"]:
            try:
                profiles.append(ConnectionProfile.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed connection profile: {str(e)}")
        return profiles

    def save_profile(self, profile: ConnectionProfile) -> None:
        """Insert or replace a profile by id."""
        with self._lock:
            data = self._load()
            profiles = [p for p in data["profiles"] if p.get("id") != profile.id]
            profiles.append(profile.to_dict())
            data["profiles"] = profiles
            self._save(data)

    # History

    def add_history(self, entry: CloneHistoryEntry) -> None:
        with self._lock:
            data = self._load()
            history = [entry.to_dict()] + list(data["history"])
            data["history"] = history[:self.history_limit]
            self._save(data)
        logger.debug(f"Recorded history entry {entry.id} ({entry.status.value})")

    def list_history(self) -> List[CloneHistoryEntry]:
        with self._lock:
            data = self._load()
        entries = []
        for raw in data["history"]:
            try:
                entries.append(CloneHistoryEntry.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed history entry: {str(e)}")
        return entries

    def get_history_entry(self, entry_id: str) -> Optional[CloneHistoryEntry]:
        for entry in self.list_history():
            if entry.id == entry_id:
                return entry
        return None

    def clear_history(self) -> None:
        with self._lock:
            data = self._load()
            data["history"] = []
            self._save(data)

    # Saved operations

    def list_saved_operations(self) -> List[SavedOperation]:
        with self._lock:
            data = self._load()
        operations = []
        for raw in data["savedOperations"]:
            try:
                operations.append(SavedOperation.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed saved operation: {str(e)}")
        return operations

    def save_operation(self, operation: SavedOperation) -> None:
        """Insert or replace a saved operation; names are unique."""
        with self._lock:
            data = self._load()
            operations = [
                o for o in data["savedOperations"]
                if o.get("id") != operation.id and o.get("name") != operation.name
            ]
            operations.append(operation.to_dict())
            data["savedOperations"] = operations
            self._save(data)

    def get_saved_operation(self, id_or_name: str) -> Optional[SavedOperation]:
        operations = self.list_saved_operations()
        for operation in operations:
            if operation.id == id_or_name:
                return operation
        for operation in operations:
            if operation.name == id_or_name:
                return operation
        return None

    def delete_saved_operation(self, id_or_name: str) -> bool:
        """Delete a saved operation; returns False when nothing matched."""
        with self._lock:
            data = self._load()
            before = len(data["savedOperations"])
            data["savedOperations"] = [
                o for o in data["savedOperations"]
                if o.get("id") != id_or_name and o.get("name") != id_or_name
            ]
            if len(data["savedOperations"]) == before:
                return False
            self._save(data)
            return True
