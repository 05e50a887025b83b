"""Detection of the PostgreSQL client tools and command line helpers."""
import glob
import os
import re
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from ..core.logging import get_logger
from ..domain.models import ToolPaths

logger = get_logger(__name__)

TOOL_NAMES = ("psql", "pg_dump", "pg_restore")

# Checked after PATH, in this order
COMMON_UNIX_DIRS = [
    "/usr/bin",
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "/usr/local/pgsql/bin",
]


def _version_key(path: str) -> List[int]:
    """Numeric sort key for "<version>/bin" directories."""
    numbers = re.findall(r"\d+", Path(path).parent.name)
    return [int(n) for n in numbers]


def candidate_dirs() -> List[str]:
    """Install directories searched when a tool is not on PATH."""
    if sys.platform == "win32":
        dirs = []
        for base in (os.environ.get("ProgramFiles", r"C:\Program Files"),
                     os.environ.get("ProgramFiles(x86)", r"C:\Program Files (x86)")):
            versions = glob.glob(os.path.join(base, "PostgreSQL", "*", "bin"))
            dirs.extend(sorted(versions, key=_version_key, reverse=True))
        return dirs

    dirs = list(COMMON_UNIX_DIRS)
    # Debian/Ubuntu keep one directory per major version
    versions = glob.glob("/usr/lib/postgresql/*/bin")
    dirs.extend(sorted(versions, key=_version_key, reverse=True))
    # Homebrew versioned formulae
    versions = glob.glob("/opt/homebrew/opt/postgresql@*/bin")
    dirs.extend(sorted(versions, key=_version_key, reverse=True))
    return dirs


def find_tool(name: str, override: Optional[str] = None) -> Optional[str]:
    """Resolve a client tool to an executable path.

    Args:
        name: Tool name (psql, pg_dump, pg_restore)
        override: Explicit path from configuration

    Returns:
        Absolute path of the tool, or None when it cannot be found
    """
    if override:
        resolved = shutil.which(os.path.expanduser(override))
        if resolved:
            return resolved
        logger.warning(f"Configured path for {name} is not executable: {override}")

    resolved = shutil.which(name)
    if resolved:
        return resolved

    executable = f"{name}.exe" if sys.platform == "win32" else name
    for directory in candidate_dirs():
        path = os.path.join(directory, executable)
        if os.path.isfile(path) and os.access(path, os.X_OK):
            logger.debug(f"Found {name} outside PATH: {path}")
            return path

    return None


def detect_tools(config) -> ToolPaths:
    """Resolve all client tools, honoring overrides from the tools config section."""
    tools = ToolPaths(
        psql=find_tool("psql", config.tools.psql),
        pg_dump=find_tool("pg_dump", config.tools.pg_dump),
        pg_restore=find_tool("pg_restore", config.tools.pg_restore),
    )
    for name in tools.missing():
        logger.warning(f"{name} not found. Please install PostgreSQL client tools.")
    return tools


def client_version(psql: str) -> Optional[str]:
    """Version banner of the client tools, e.g. "psql (PostgreSQL) 16.2"."""
    try:
        result = subprocess.run(
            [psql, "--version"],
            capture_output=True,
            text=True,
            timeout=10,
            check=False
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Could not query client version: {str(e)}")
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def quote_ident(name: str) -> str:
    """Quote an SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote an SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


def split_qualified(name: str, default_schema: str = "public") -> Sequence[str]:
    """Split "schema.table" into its parts; bare names land in the default schema."""
    if "." in name:
        schema, _, table = name.partition(".")
        return schema, table
    return default_schema, name


def table_pattern(name: str) -> str:
    """Exact pg_dump table pattern for "schema.table" or a bare table name.

    Quoting disables pg_dump's wildcard and case folding rules, so the pattern
    matches exactly one table.
    """
    schema, table = split_qualified(name)
    return f"{quote_ident(schema)}.{quote_ident(table)}"


def schema_pattern(name: str) -> str:
    """Exact pg_dump schema pattern."""
    return quote_ident(name)
