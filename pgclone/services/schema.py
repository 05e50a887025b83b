"""Schema export: pg_dump --schema-only filtered by object type."""
import re
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import sqlparse

from ..core.exceptions import CatalogError, Cancelled, ProcessFailed, ToolNotFound, ValidationError
from ..core.logging import get_logger
from ..domain.interfaces import ProcessRunnerInterface, ProfileStoreInterface
from ..domain.models import CloneStage, ConnectionProfile, SchemaExportOptions, ToolPaths
from ..domain.process import ProcessHandle
from ..infrastructure.pg_tools import schema_pattern, split_qualified, table_pattern
from .catalog import SchemaCatalogReader
from .progress import ProgressReporter, StagePlan

logger = get_logger(__name__)

# pg_dump TOC entry header, e.g. "-- Name: users; Type: TABLE; Schema: public; Owner: app"
TOC_HEADER_RE = re.compile(
    r"^-- (?:Data for )?Name: (?P<name>.*?); Type: (?P<type>[A-Z ]+?); Schema: (?P<schema>[^;]*)"
)
# Closing comment of a plain dump; kept apart from the last TOC entry
FOOTER_RE = re.compile(r"^-- PostgreSQL database dump complete")
# Per-run random keys written by recent pg_dump releases
RESTRICT_RE = re.compile(r"^\\(?:un)?restrict\b")

# TOC entry types controlled by each include_* switch
TYPE_SWITCHES: Dict[str, Tuple[str, ...]] = {
    "include_comments": ("COMMENT",),
    "include_indexes": ("INDEX", "INDEX ATTACH"),
    "include_constraints": ("CONSTRAINT", "FK CONSTRAINT", "CHECK CONSTRAINT"),
    "include_triggers": ("TRIGGER", "EVENT TRIGGER"),
    "include_sequences": ("SEQUENCE", "SEQUENCE OWNED BY", "SEQUENCE SET"),
    "include_types": ("TYPE", "DOMAIN", "SHELL TYPE"),
    "include_functions": ("FUNCTION", "PROCEDURE", "AGGREGATE"),
    "include_views": ("VIEW", "MATERIALIZED VIEW"),
}

# Leading keywords of statements outside any TOC entry, most specific first
STATEMENT_KINDS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"^COMMENT\s+ON\b", re.I), "COMMENT"),
    (re.compile(r"^CREATE\s+(?:OR\s+REPLACE\s+)?(?:CONSTRAINT\s+)?TRIGGER\b", re.I), "TRIGGER"),
    (re.compile(r"^CREATE\s+EVENT\s+TRIGGER\b", re.I), "EVENT TRIGGER"),
    (re.compile(r"^CREATE\s+(?:UNIQUE\s+)?INDEX\b", re.I), "INDEX"),
    (re.compile(r"^ALTER\s+INDEX\b.*\bATTACH\s+PARTITION\b", re.I | re.S), "INDEX ATTACH"),
    (re.compile(r"^ALTER\s+TABLE\b.*\bADD\s+CONSTRAINT\b.*\bFOREIGN\s+KEY\b", re.I | re.S), "FK CONSTRAINT"),
    (re.compile(r"^ALTER\s+TABLE\b.*\bADD\s+CONSTRAINT\b", re.I | re.S), "CONSTRAINT"),
    (re.compile(r"^ALTER\s+TABLE\b.*\bSET\s+DEFAULT\s+nextval\(", re.I | re.S), "DEFAULT"),
    (re.compile(r"^(?:CREATE|ALTER)\s+SEQUENCE\b", re.I), "SEQUENCE"),
    (re.compile(r"^SELECT\s+pg_catalog\.setval\(", re.I), "SEQUENCE SET"),
    (re.compile(r"^CREATE\s+(?:OR\s+REPLACE\s+)?FUNCTION\b", re.I), "FUNCTION"),
    (re.compile(r"^CREATE\s+(?:OR\s+REPLACE\s+)?PROCEDURE\b", re.I), "PROCEDURE"),
    (re.compile(r"^CREATE\s+(?:OR\s+REPLACE\s+)?AGGREGATE\b", re.I), "AGGREGATE"),
    (re.compile(r"^CREATE\s+MATERIALIZED\s+VIEW\b", re.I), "MATERIALIZED VIEW"),
    (re.compile(r"^CREATE\s+(?:OR\s+REPLACE\s+)?(?:TEMP\w*\s+)?(?:RECURSIVE\s+)?VIEW\b", re.I), "VIEW"),
    (re.compile(r"^CREATE\s+DOMAIN\b", re.I), "DOMAIN"),
    (re.compile(r"^CREATE\s+TYPE\b", re.I), "TYPE"),
]


@dataclass
class DumpBlock:
    """One pg_dump TOC entry (header comment and statements) or an untagged segment."""
    lines: List[str] = field(default_factory=list)
    name: Optional[str] = None
    type: Optional[str] = None
    schema: Optional[str] = None

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


def excluded_types(options: SchemaExportOptions) -> Set[str]:
    """TOC entry types switched off by the export options."""
    types: Set[str] = set()
    for switch, entry_types in TYPE_SWITCHES.items():
        if not getattr(options, switch):
            types.update(entry_types)
    return types


def split_blocks(lines: List[str]) -> List[DumpBlock]:
    """Split a plain dump into TOC entry blocks.

    Each block starts at the "--" line above a TOC header. Text before the
    first header (the preamble) becomes an untagged block.
    """
    blocks: List[DumpBlock] = []
    current = DumpBlock()
    i = 0
    while i < len(lines):
        line = lines[i]
        match = TOC_HEADER_RE.match(line)
        footer = FOOTER_RE.match(line)
        if (match or footer) and i > 0 and lines[i - 1] == "--":
            # The opening "--" already landed in the previous block
            opener = current.lines.pop() if current.lines and current.lines[-1] == "--" else None
            if current.lines:
                blocks.append(current)
            if match:
                current = DumpBlock(
                    name=match.group("name"),
                    type=match.group("type").strip(),
                    schema=match.group("schema").strip()
                )
            else:
                current = DumpBlock()
            if opener is not None:
                current.lines.append(opener)
        current.lines.append(line)
        i += 1
    if current.lines:
        blocks.append(current)
    return blocks


def _names_dropped_object(name: str, dropped: Set[str]) -> bool:
    """True for COMMENT/ACL names such as "FUNCTION f()" when FUNCTION is dropped."""
    for kind in sorted(dropped, key=len, reverse=True):
        if name.startswith(kind + " "):
            return True
    return False


def _attached_to_dropped(block: DumpBlock, dropped_objects: Dict[str, Set[str]]) -> bool:
    """True for COMMENT/ACL entries naming an object dropped from the same schema.

    pg_dump names them "<KIND> <object>" or "COLUMN <relation>.<column>", and
    the kind need not match the object's own entry type: a view's grants are
    tagged "TABLE <view>".
    """
    names = dropped_objects.get(block.schema)
    if not names:
        return False
    target = block.name.replace('"', "")
    if target.startswith("COLUMN "):
        return target[len("COLUMN "):].rpartition(".")[0] in names
    return any(target.endswith(" " + name) for name in names)


def _dropped_objects(blocks: List[DumpBlock], dropped: Set[str]) -> Dict[str, Set[str]]:
    """Names of the dropped TOC entries, grouped by schema."""
    objects: Dict[str, Set[str]] = {}
    for block in blocks:
        if block.type in dropped and block.type not in ("COMMENT", "ACL"):
            objects.setdefault(block.schema, set()).add(block.name.replace('"', ""))
    return objects


def classify_statement(statement: str) -> Optional[str]:
    """TOC-like type of a bare SQL statement, judged by its leading keywords."""
    text = sqlparse.format(statement, strip_comments=True).strip()
    for pattern, kind in STATEMENT_KINDS:
        if pattern.match(text):
            return kind
    return None


def _filter_untagged(block: DumpBlock, dropped: Set[str], drop_nextval: bool) -> List[str]:
    statements = sqlparse.split(block.text)
    kept = []
    removed = 0
    for statement in statements:
        kind = classify_statement(statement)
        if kind in dropped or (kind == "DEFAULT" and drop_nextval):
            removed += 1
            continue
        kept.append(statement)
    if not removed:
        return block.lines
    return "\n\n".join(kept).splitlines() + [""]


def filter_dump(text: str, options: SchemaExportOptions) -> str:
    """Drop the object types switched off in the options from a plain dump.

    COMMENT and ACL entries attached to a dropped object go with it, and so do
    column defaults calling nextval() when sequences are dropped. The output
    is deterministic for a given database state.
    """
    lines = [line for line in text.splitlines() if not RESTRICT_RE.match(line)]
    dropped = excluded_types(options)
    drop_nextval = not options.include_sequences

    blocks = split_blocks(lines)
    dropped_objects = _dropped_objects(blocks, dropped)

    output: List[str] = []
    for block in blocks:
        if block.type is None:
            output.extend(_filter_untagged(block, dropped, drop_nextval) if dropped else block.lines)
            continue
        if block.type in dropped:
            continue
        if block.type in ("COMMENT", "ACL") and (
            _names_dropped_object(block.name, dropped) or _attached_to_dropped(block, dropped_objects)
        ):
            continue
        if block.type == "DEFAULT" and drop_nextval and "nextval(" in block.text:
            continue
        output.extend(block.lines)

    while output and not output[-1].strip():
        output.pop()
    return "\n".join(output) + "\n"


class SchemaExtractor:
    """Produces the DDL of a database as one SQL document."""

    def __init__(
        self,
        profiles: ProfileStoreInterface,
        runner: ProcessRunnerInterface,
        tools: ToolPaths,
        reporter: Optional[ProgressReporter] = None,
        catalog: Optional[SchemaCatalogReader] = None
    ):
        self.profiles = profiles
        self.runner = runner
        self.tools = tools
        self.reporter = reporter or ProgressReporter(plan=StagePlan.for_schema())
        if catalog is None and tools.psql:
            catalog = SchemaCatalogReader(runner, tools.psql)
        self.catalog = catalog
        self.profile: Optional[ConnectionProfile] = None
        self.options: Optional[SchemaExportOptions] = None
        self._args: List[str] = []
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._current: Optional[ProcessHandle] = None

    def prepare(self, options: SchemaExportOptions) -> None:
        """Validate the request and build the pg_dump arguments.

        Raises:
            ValidationError: If the profile does not exist or no requested
                table lies inside the requested schemas
        """
        profile = self.profiles.get_profile(options.profile_id)
        if profile is None:
            raise ValidationError(f"Connection not found: {options.profile_id}")
        self.profile = profile.snapshot()
        self.options = options
        self._args = self.build_args(self.profile, options)
        self.reporter.set_plan(StagePlan.for_schema())

    @staticmethod
    def requested_names(options: SchemaExportOptions) -> Tuple[List[str], List[str]]:
        """Cleaned schema and table allow-lists; tables outside the schemas are dropped.

        Raises:
            ValidationError: If no requested table lies inside the requested schemas
        """
        schemas = [s.strip() for s in options.schemas if s.strip()]
        tables = [t.strip() for t in options.tables if t.strip()]
        if tables and schemas:
            allowed = set(schemas)
            tables = [t for t in tables if split_qualified(t)[0] in allowed]
            if not tables:
                raise ValidationError("None of the requested tables is inside the requested schemas")
        return schemas, tables

    @staticmethod
    def build_args(profile: ConnectionProfile, options: SchemaExportOptions) -> List[str]:
        args = ["--verbose", "-d", profile.conninfo, "--schema-only", "-Fp"]
        schemas, tables = SchemaExtractor.requested_names(options)
        if tables:
            # --table selects only the tables; --schema would widen the dump again
            args.extend(f"--table={table_pattern(t)}" for t in tables)
        else:
            args.extend(f"--schema={schema_pattern(s)}" for s in schemas)
        return args

    def extract(self, options: SchemaExportOptions) -> str:
        """Validate, dump and filter in one call."""
        self.prepare(options)
        return self.run()

    def run(self) -> str:
        """Dump and filter the prepared export; the reporter is closed afterwards.

        Raises:
            ToolNotFound: If pg_dump cannot be resolved
            ProcessFailed: If pg_dump fails
            ValidationError: If none of the requested schemas exists
            Cancelled: If the export was cancelled
        """
        profile = self.profile
        try:
            self.reporter.stage(CloneStage.PREPARING, f"Preparing schema export of {profile.name}")
            self.reporter.info(f"Database: {profile.host}:{profile.port}/{profile.database}")
            if not self.tools.pg_dump:
                raise ToolNotFound("pg_dump")
            self._check_requested_names(profile)
            self._check_cancelled()

            self.reporter.stage(CloneStage.DUMPING, "Extracting database schema")
            result = self.runner.run(
                self.tools.pg_dump,
                self._args,
                env=profile.env(),
                on_line=self._stderr_only,
                tool="pg_dump",
                on_start=self._track
            )
            self._check_cancelled()
            schema = filter_dump(result.stdout_text, self.options)
            self.reporter.success(f"Schema extracted ({len(schema.encode('utf-8')) / 1024:.2f} KB)")
            self.reporter.complete("Schema ready for download")
            return schema
        except Cancelled:
            self.reporter.cancel("Schema export cancelled by user")
            raise
        except ProcessFailed as e:
            if self._cancel_event.is_set():
                self.reporter.cancel("Schema export cancelled by user")
                raise Cancelled("Schema export cancelled by user")
            error = e.with_stage(CloneStage.DUMPING.value)
            self.reporter.fail(str(error))
            raise error
        except Exception as e:
            self.reporter.fail(str(e))
            raise
        finally:
            self.reporter.close()

    def _check_requested_names(self, profile: ConnectionProfile) -> None:
        """Compare the allow-lists with the catalog of the database.

        Unknown names are logged as warnings. A catalog that cannot be read only
        skips the check.

        Raises:
            ValidationError: If a schema allow-list names no existing schema
        """
        schemas, tables = self.requested_names(self.options)
        if not schemas and not tables:
            return
        if self.catalog is None:
            self.reporter.warning("psql not found, requested schemas and tables are not checked")
            return
        try:
            structure = self.catalog.read_structure(profile, on_start=self._track)
        except (CatalogError, ToolNotFound) as e:
            self.reporter.warning(f"Could not check requested schemas and tables: {str(e)}")
            return

        known_schemas = {s.name for s in structure.schemas}
        missing = [s for s in schemas if s not in known_schemas]
        for schema in missing:
            self.reporter.warning(f"Schema not found in {profile.database}: {schema}")
        known_tables = {(t.schema, t.name) for t in structure.tables}
        for table in tables:
            schema, name = split_qualified(table)
            if (schema, name) not in known_tables:
                # pg_dump --table also matches views and sequences
                self.reporter.warning(f"No table {schema}.{name} in {profile.database}")
        if schemas and not tables and len(missing) == len(schemas):
            raise ValidationError(
                f"None of the requested schemas exists in {profile.database}: {', '.join(schemas)}"
            )

    def cancel(self) -> None:
        self._cancel_event.set()
        with self._lock:
            handle = self._current
        if handle is not None:
            handle.kill()

    def _stderr_only(self, tool: str, stream: str, line: str) -> None:
        # stdout carries the DDL itself
        if stream == "stderr":
            self.reporter.tool_line(tool, stream, line)

    def _track(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._current = handle
        if self._cancel_event.is_set():
            handle.kill()

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise Cancelled("Schema export cancelled by user")
