"""Read-only catalog queries through psql."""
from typing import Callable, Dict, List, Optional, Sequence

from ..core.exceptions import CatalogError, ProcessFailed, SpawnFailed
from ..core.logging import get_logger
from ..domain.interfaces import ProcessRunnerInterface
from ..domain.models import ConnectionProfile, DatabaseInfo, DatabaseStructure, SchemaInfo, TableInfo
from ..domain.process import ProcessHandle
from ..infrastructure.pg_tools import quote_ident, quote_literal

logger = get_logger(__name__)

# ASCII unit separator; cannot appear in identifiers typed by users
FIELD_SEPARATOR = "\x1f"

SYSTEM_SCHEMA_FILTER = """
    n.nspname NOT IN ('pg_catalog', 'information_schema', 'pg_toast')
    AND n.nspname NOT LIKE 'pg_temp_%'
    AND n.nspname NOT LIKE 'pg_toast_temp_%'
"""

SCHEMAS_QUERY = f"""
SELECT n.nspname, count(c.oid)
FROM pg_catalog.pg_namespace n
LEFT JOIN pg_catalog.pg_class c
    ON c.relnamespace = n.oid AND c.relkind IN ('r', 'p')
WHERE {SYSTEM_SCHEMA_FILTER}
GROUP BY n.nspname
ORDER BY n.nspname
"""

TABLES_QUERY = """
SELECT t.table_schema,
       t.table_name,
       COALESCE(s.n_live_tup, 0),
       COALESCE(pg_catalog.pg_total_relation_size(
           format('%I.%I', t.table_schema, t.table_name)::regclass), 0)
FROM information_schema.tables t
LEFT JOIN pg_catalog.pg_stat_user_tables s
    ON s.schemaname = t.table_schema AND s.relname = t.table_name
WHERE t.table_type = 'BASE TABLE'
  AND t.table_schema NOT IN ('pg_catalog', 'information_schema')
ORDER BY t.table_schema, t.table_name
"""

DATABASE_QUERY = "SELECT version(), pg_catalog.pg_database_size(current_database())"


def psql_base_args(profile: ConnectionProfile) -> List[str]:
    """Connection arguments shared by every psql invocation."""
    # -X skips ~/.psqlrc so user settings cannot change the output
    return ["-X", "-v", "ON_ERROR_STOP=1", "-d", profile.conninfo]


def parse_rows(lines: Sequence[str], columns: int) -> List[List[str]]:
    """Split unaligned psql output into rows of a fixed width.

    Raises:
        CatalogError: If a row has the wrong number of fields
    """
    rows = []
    for line in lines:
        if not line.strip():
            continue
        fields = line.split(FIELD_SEPARATOR)
        if len(fields) != columns:
            raise CatalogError(f"Unexpected catalog row ({len(fields)} fields, expected {columns}): {line}")
        rows.append(fields)
    return rows


def _to_int(value: str) -> int:
    try:
        return int(float(value))
    except ValueError:
        raise CatalogError(f"Expected a number in catalog output, got '{value}'")


class SchemaCatalogReader:
    """Catalog snapshots of a database, read with ``psql -X -A -t``.

    Uses catalog statistics (``n_live_tup``, ``pg_total_relation_size``)
    rather than table scans, except for ``count_rows`` which is exact.
    """

    def __init__(self, runner: ProcessRunnerInterface, psql: str = "psql"):
        self.runner = runner
        self.psql = psql

    def query(
        self,
        profile: ConnectionProfile,
        sql: str,
        columns: int,
        on_start: Optional[Callable[[ProcessHandle], None]] = None
    ) -> List[List[str]]:
        """Run one query and return its rows as lists of strings.

        Raises:
            CatalogError: If psql fails or returns malformed rows
            ToolNotFound: If psql cannot be resolved
            Cancelled: If the query was killed through its handle
        """
        args = psql_base_args(profile) + ["-A", "-t", "-F", FIELD_SEPARATOR, "-c", sql]
        try:
            result = self.runner.run(self.psql, args, env=profile.env(), tool="psql", on_start=on_start)
        except (ProcessFailed, SpawnFailed) as e:
            raise CatalogError(f"Catalog query on {profile.database} failed: {str(e)}")
        return parse_rows(result.stdout, columns)

    def list_tables(self, profile: ConnectionProfile, on_start=None) -> List[TableInfo]:
        rows = self.query(profile, TABLES_QUERY, 4, on_start=on_start)
        return [
            TableInfo(schema=row[0], name=row[1], row_count=_to_int(row[2]), size=_to_int(row[3]))
            for row in rows
        ]

    def list_schemas(self, profile: ConnectionProfile, on_start=None) -> List[SchemaInfo]:
        rows = self.query(profile, SCHEMAS_QUERY, 2, on_start=on_start)
        return [SchemaInfo(name=row[0], table_count=_to_int(row[1])) for row in rows]

    def read_structure(self, profile: ConnectionProfile, on_start=None) -> DatabaseStructure:
        """Schemas (with table counts) and tables (with estimates) of a database."""
        schemas = self.list_schemas(profile, on_start=on_start)
        tables = self.list_tables(profile, on_start=on_start)
        logger.debug(f"Catalog of {profile.database}: {len(schemas)} schemas, {len(tables)} tables")
        return DatabaseStructure(schemas=tuple(schemas), tables=tuple(tables))

    def read_database_info(self, profile: ConnectionProfile) -> DatabaseInfo:
        """Server version, tables and total size; used for connection tests."""
        rows = self.query(profile, DATABASE_QUERY, 2)
        if not rows:
            raise CatalogError(f"No answer from {profile.database}")
        version, size = rows[0]
        tables = self.list_tables(profile)
        return DatabaseInfo(version=version, tables=tuple(tables), total_size=_to_int(size))

    def count_rows(
        self,
        profile: ConnectionProfile,
        tables: Sequence[str],
        on_start=None
    ) -> Dict[str, int]:
        """Exact row counts for "schema.table" names.

        Raises:
            CatalogError: If any table is missing or the query fails
        """
        if not tables:
            return {}
        parts = []
        for name in tables:
            schema, _, table = name.partition(".")
            parts.append(
                f"SELECT {quote_literal(name)}, count(*) FROM {quote_ident(schema)}.{quote_ident(table)}"
            )
        rows = self.query(profile, "\nUNION ALL\n".join(parts), 2, on_start=on_start)
        return {row[0]: _to_int(row[1]) for row in rows}
