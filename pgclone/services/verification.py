"""Post-clone verification of the destination database."""
from typing import Callable, List, Optional, Sequence

from ..core.exceptions import VerificationMismatch
from ..core.logging import get_logger
from ..domain.models import ConnectionProfile, TableInfo
from ..domain.process import ProcessHandle
from ..infrastructure.pg_tools import split_qualified
from .catalog import SchemaCatalogReader

logger = get_logger(__name__)


def normalize_table_names(names: Sequence[str]) -> List[str]:
    """"schema.table" form of user supplied names; bare names are in public."""
    return [".".join(split_qualified(name)) for name in names]


class CloneVerifier:
    """Compares the destination against the source after a clone."""

    def __init__(self, catalog: SchemaCatalogReader, sample_size: int = 5):
        """Initialize the verifier.

        Args:
            catalog: Catalog reader used for both databases
            sample_size: Number of tables whose exact row counts are compared
        """
        self.catalog = catalog
        self.sample_size = max(0, sample_size)

    def expected_tables(self, source_tables: Sequence[TableInfo], exclude_tables: Sequence[str]) -> List[TableInfo]:
        excluded = set(normalize_table_names(exclude_tables))
        return [t for t in source_tables if t.qualified_name not in excluded]

    def sample(self, tables: Sequence[TableInfo]) -> List[TableInfo]:
        """Deterministic sample: largest estimated tables first, then by name."""
        ordered = sorted(tables, key=lambda t: (-t.row_count, t.qualified_name))
        return ordered[:self.sample_size]

    def verify(
        self,
        source: ConnectionProfile,
        destination: ConnectionProfile,
        source_tables: Optional[Sequence[TableInfo]],
        exclude_tables: Sequence[str],
        compare_rows: bool,
        on_start: Optional[Callable[[ProcessHandle], None]] = None
    ) -> str:
        """Check the destination and return a summary.

        Args:
            source: Source profile snapshot
            destination: Destination profile snapshot
            source_tables: Source catalog taken before the clone, or None to read it now
            exclude_tables: Tables the clone skipped
            compare_rows: Compare exact row counts of a sample (data was copied)
            on_start: Receives each psql handle so the caller can cancel

        Returns:
            One line summary of what was checked

        Raises:
            VerificationMismatch: If the destination differs from the source
            CatalogError: If a catalog query fails
        """
        if source_tables is None:
            source_tables = self.catalog.list_tables(source, on_start=on_start)
        expected = self.expected_tables(source_tables, exclude_tables)
        destination_tables = self.catalog.list_tables(destination, on_start=on_start)
        present = {t.qualified_name for t in destination_tables}

        missing = sorted(t.qualified_name for t in expected if t.qualified_name not in present)
        if missing:
            shown = ", ".join(missing[:10])
            more = f" and {len(missing) - 10} more" if len(missing) > 10 else ""
            raise VerificationMismatch(f"{len(missing)} table(s) missing in destination: {shown}{more}")

        summary = f"Verified {len(expected)} table(s) in destination"
        if not compare_rows or not expected or self.sample_size == 0:
            return summary

        names = [t.qualified_name for t in self.sample(expected)]
        source_counts = self.catalog.count_rows(source, names, on_start=on_start)
        destination_counts = self.catalog.count_rows(destination, names, on_start=on_start)
        differences = [
            f"{name} (source {source_counts.get(name)}, destination {destination_counts.get(name)})"
            for name in names
            if source_counts.get(name) != destination_counts.get(name)
        ]
        if differences:
            raise VerificationMismatch("Row count mismatch: " + "; ".join(differences))

        logger.debug(f"Row counts match for {', '.join(names)}")
        return f"{summary}, row counts match for {len(names)} sampled table(s)"
