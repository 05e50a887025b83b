"""Domain models for the PostgreSQL clone tool."""
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id() -> str:
    return str(uuid.uuid4())


class CloneType(Enum):
    """Granularity of a clone."""
    STRUCTURE = "structure"  # Schema objects only
    DATA = "data"  # Row data only, destination tables must exist
    BOTH = "both"  # Full transfer

    @property
    def includes_data(self) -> bool:
        return self is not CloneType.STRUCTURE


class CloneStage(Enum):
    """Pipeline stages, declared in execution order."""
    PREPARING = "preparing"
    BACKUP = "backup"
    CLEANING = "cleaning"
    DUMPING = "dumping"
    RESTORING = "restoring"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (CloneStage.COMPLETED, CloneStage.ERROR)


class CloneStatus(Enum):
    """Final status of a clone run as recorded in history."""
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class LogLevel(Enum):
    """Level of a run log line."""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    SUCCESS = "SUCCESS"


def _conninfo_value(value: Any) -> str:
    """Single-quoted libpq conninfo value with backslashes and quotes escaped."""
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


@dataclass
class ConnectionProfile:
    """Connection profile for a PostgreSQL database."""
    id: str
    name: str
    host: str
    port: int
    database: str
    user: str
    password: str = ""
    ssl: bool = False
    tag_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def snapshot(self) -> "ConnectionProfile":
        """Copy used for the duration of one run."""
        return replace(self)

    @property
    def conninfo(self) -> str:
        """libpq keyword/value connection string (password travels in the environment)."""
        pairs = (("host", self.host), ("port", self.port), ("dbname", self.database), ("user", self.user))
        return " ".join(f"{key}={_conninfo_value(value)}" for key, value in pairs)

    def env(self) -> Dict[str, str]:
        """Environment variables for libpq based tools."""
        return {
            "PGPASSWORD": self.password,
            "PGSSLMODE": "require" if self.ssl else "prefer",
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "password": self.password,
            "ssl": self.ssl,
            "tagId": self.tag_id,
            "createdAt": _format_ts(self.created_at),
            "updatedAt": _format_ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionProfile":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            host=data.get("host", "localhost"),
            port=int(data.get("port", 5432)),
            database=data.get("database", ""),
            user=data.get("user", ""),
            password=data.get("password", ""),
            ssl=bool(data.get("ssl", False)),
            tag_id=data.get("tagId"),
            created_at=_parse_ts(data.get("createdAt")) or utc_now(),
            updated_at=_parse_ts(data.get("updatedAt")) or utc_now(),
        )


@dataclass
class CloneOptions:
    """Options for a clone run."""
    source_id: str
    destination_id: str
    clean_destination: bool = False
    create_backup: bool = True
    clone_type: CloneType = CloneType.BOTH
    exclude_tables: List[str] = field(default_factory=list)

    def __post_init__(self):
        if isinstance(self.clone_type, str):
            self.clone_type = CloneType(self.clone_type.lower())
        # Deduplicate while keeping the user's order
        seen = []
        for table in self.exclude_tables:
            table = table.strip()
            if table and table not in seen:
                seen.append(table)
        self.exclude_tables = seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "destinationId": self.destination_id,
            "cleanDestination": self.clean_destination,
            "createBackup": self.create_backup,
            "cloneType": self.clone_type.value,
            "excludeTables": list(self.exclude_tables),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CloneOptions":
        return cls(
            source_id=data["sourceId"],
            destination_id=data["destinationId"],
            clean_destination=bool(data.get("cleanDestination", False)),
            create_backup=bool(data.get("createBackup", True)),
            clone_type=CloneType(data.get("cloneType", "both")),
            exclude_tables=list(data.get("excludeTables", [])),
        )


@dataclass(frozen=True)
class CloneProgress:
    """Progress snapshot published to observers."""
    stage: CloneStage
    progress: int
    message: str
    is_complete: bool = False
    is_error: bool = False

    @property
    def is_cancelled(self) -> bool:
        """Terminal snapshot of a cancelled run (stage is left where it was)."""
        return self.is_complete and not self.stage.is_terminal


@dataclass(frozen=True)
class LogLine:
    """One timestamped log line of a run."""
    level: LogLevel
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    source: Optional[str] = None  # Tool name for raw tool output
    stage: Optional[CloneStage] = None  # Set on stage transition markers

    def format(self) -> str:
        prefix = f"[{self.level.value}]"
        if self.source:
            prefix += f" {self.source}:"
        return f"{prefix} {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "timestamp": _format_ts(self.timestamp),
            "level": self.level.value,
            "message": self.message,
        }
        if self.source:
            data["source"] = self.source
        if self.stage:
            data["stage"] = self.stage.value
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "LogLine":
        # Entries written as plain "[LEVEL] message" strings are accepted too
        if isinstance(data, str):
            level = LogLevel.INFO
            message = data
            if data.startswith("[") and "]" in data:
                tag, _, rest = data[1:].partition("]")
                if tag in LogLevel.__members__:
                    level = LogLevel[tag]
                    message = rest.strip()
            return cls(level=level, message=message)
        return cls(
            level=LogLevel(data.get("level", "INFO")),
            message=data.get("message", ""),
            timestamp=_parse_ts(data.get("timestamp")) or utc_now(),
            source=data.get("source"),
            stage=CloneStage(data["stage"]) if data.get("stage") else None,
        )


@dataclass(frozen=True)
class CloneHistoryEntry:
    """Audit record of a finished clone run."""
    id: str
    source_id: str
    source_name: str
    destination_id: str
    destination_name: str
    clone_type: CloneType
    status: CloneStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration: Optional[int] = None  # seconds
    error_message: Optional[str] = None
    logs: Tuple[LogLine, ...] = ()
    backup_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sourceId": self.source_id,
            "sourceName": self.source_name,
            "destinationId": self.destination_id,
            "destinationName": self.destination_name,
            "cloneType": self.clone_type.value,
            "status": self.status.value,
            "startedAt": _format_ts(self.started_at),
            "completedAt": _format_ts(self.completed_at),
            "duration": self.duration,
            "errorMessage": self.error_message,
            "logs": [line.to_dict() for line in self.logs],
            "backupPath": self.backup_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CloneHistoryEntry":
        return cls(
            id=data["id"],
            source_id=data.get("sourceId", ""),
            source_name=data.get("sourceName", ""),
            destination_id=data.get("destinationId", ""),
            destination_name=data.get("destinationName", ""),
            clone_type=CloneType(data.get("cloneType", "both")),
            status=CloneStatus(data.get("status", "error")),
            started_at=_parse_ts(data.get("startedAt")) or utc_now(),
            completed_at=_parse_ts(data.get("completedAt")),
            duration=data.get("duration"),
            error_message=data.get("errorMessage"),
            logs=tuple(LogLine.from_dict(line) for line in data.get("logs", [])),
            backup_path=data.get("backupPath"),
        )


@dataclass
class SchemaExportOptions:
    """Options for a schema export."""
    profile_id: str
    schemas: List[str] = field(default_factory=list)  # Empty means all
    tables: List[str] = field(default_factory=list)  # "schema.table", empty means all
    include_comments: bool = True
    include_indexes: bool = True
    include_constraints: bool = True
    include_triggers: bool = True
    include_sequences: bool = True
    include_types: bool = True
    include_functions: bool = True
    include_views: bool = True


@dataclass(frozen=True)
class SchemaInfo:
    """A schema and how many tables it holds."""
    name: str
    table_count: int


@dataclass(frozen=True)
class TableInfo:
    """A table with catalog estimates of its size."""
    schema: str
    name: str
    row_count: int
    size: int

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass(frozen=True)
class DatabaseStructure:
    """Read-only catalog snapshot of a database."""
    schemas: Tuple[SchemaInfo, ...] = ()
    tables: Tuple[TableInfo, ...] = ()

    def tables_in(self, schema: str) -> List[TableInfo]:
        return [t for t in self.tables if t.schema == schema]


@dataclass(frozen=True)
class DatabaseInfo:
    """Result of a connection test."""
    version: str
    tables: Tuple[TableInfo, ...]
    total_size: int


@dataclass
class SavedOperation:
    """Named, reusable clone options template."""
    id: str
    name: str
    source_id: str
    destination_id: str
    clean_destination: bool = False
    create_backup: bool = True
    clone_type: CloneType = CloneType.BOTH
    exclude_tables: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_options(cls, name: str, options: CloneOptions) -> "SavedOperation":
        return cls(
            id=new_id(),
            name=name,
            source_id=options.source_id,
            destination_id=options.destination_id,
            clean_destination=options.clean_destination,
            create_backup=options.create_backup,
            clone_type=options.clone_type,
            exclude_tables=list(options.exclude_tables),
        )

    def to_options(self) -> CloneOptions:
        return CloneOptions(
            source_id=self.source_id,
            destination_id=self.destination_id,
            clean_destination=self.clean_destination,
            create_backup=self.create_backup,
            clone_type=self.clone_type,
            exclude_tables=list(self.exclude_tables),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_options().to_dict()
        data.update({
            "id": self.id,
            "name": self.name,
            "createdAt": _format_ts(self.created_at),
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedOperation":
        options = CloneOptions.from_dict(data)
        operation = cls(id=data["id"], name=data.get("name", ""), source_id=options.source_id,
                        destination_id=options.destination_id)
        operation.clean_destination = options.clean_destination
        operation.create_backup = options.create_backup
        operation.clone_type = options.clone_type
        operation.exclude_tables = options.exclude_tables
        operation.created_at = _parse_ts(data.get("createdAt")) or utc_now()
        return operation


@dataclass(frozen=True)
class ToolPaths:
    """Resolved paths of the PostgreSQL client tools."""
    psql: Optional[str] = None
    pg_dump: Optional[str] = None
    pg_restore: Optional[str] = None

    def missing(self) -> List[str]:
        """Names of tools that could not be resolved, in a fixed order."""
        return [name for name in ("psql", "pg_dump", "pg_restore") if not getattr(self, name)]

    @property
    def all_available(self) -> bool:
        return not self.missing()
