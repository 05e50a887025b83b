import pytest

from pgclone.core.exceptions import CatalogError, VerificationMismatch
from pgclone.domain.models import ConnectionProfile, TableInfo
from pgclone.services.catalog import SchemaCatalogReader, parse_rows, psql_base_args
from pgclone.services.verification import CloneVerifier, normalize_table_names

from conftest import catalog_rows


def test_parse_rows_skips_blank_lines():
    rows = parse_rows(catalog_rows(("public", "3"), ("sales", "0")) + [""], 2)
    assert rows == [["public", "3"], ["sales", "0"]]


def test_parse_rows_rejects_wrong_width():
    with pytest.raises(CatalogError):
        parse_rows(["just one field"], 2)


def test_read_structure(runner, source_profile):
    runner.on("psql", "pg_namespace", stdout=catalog_rows(("public", 2), ("sales", 0)))
    runner.on("psql", "information_schema.tables", stdout=catalog_rows(
        ("public", "orders", 120, 65536),
        ("public", "users", 42, 32768),
    ))
    reader = SchemaCatalogReader(runner, "/usr/bin/psql")

    structure = reader.read_structure(source_profile)

    assert [s.name for s in structure.schemas] == ["public", "sales"]
    assert structure.schemas[0].table_count == 2
    assert structure.tables_in("public")[1] == TableInfo("public", "users", 42, 32768)
    assert structure.tables_in("sales") == []
    call = runner.calls[0]
    assert call.args[:4] == ["-X", "-v", "ON_ERROR_STOP=1", "-d"]
    assert "-A" in call.args and "-t" in call.args


def test_read_database_info(runner, source_profile):
    runner.on("psql", "version()", stdout=catalog_rows(("PostgreSQL 16.2 on x86_64", 9000000)))
    runner.on("psql", "information_schema.tables", stdout=catalog_rows(("public", "users", 42, 32768)))
    reader = SchemaCatalogReader(runner)

    info = reader.read_database_info(source_profile)

    assert info.version.startswith("PostgreSQL 16.2")
    assert info.total_size == 9000000
    assert len(info.tables) == 1


def test_failed_query_becomes_catalog_error(runner, source_profile):
    runner.on("psql", exit_code=2, stderr=["psql: error: connection to server failed"])
    reader = SchemaCatalogReader(runner)

    with pytest.raises(CatalogError, match="connection to server failed"):
        reader.list_tables(source_profile)


def test_count_rows_quotes_identifiers(runner, source_profile):
    runner.on("psql", "count(*)", stdout=catalog_rows(("public.users", 42), ('Sales.order"s', 7)))
    reader = SchemaCatalogReader(runner)

    counts = reader.count_rows(source_profile, ["public.users", 'Sales.order"s'])

    assert counts == {"public.users": 42, 'Sales.order"s': 7}
    sql = runner.calls[0].args[-1]
    assert 'FROM "Sales"."order""s"' in sql
    assert "UNION ALL" in sql


def test_connection_string_quotes_every_value():
    profile = ConnectionProfile(id="p", name="Odd names", host="h", port=5432,
                                database="my db", user="o'neil", password="pw")

    assert profile.conninfo == "host='h' port='5432' dbname='my db' user='o\\'neil'"
    args = psql_base_args(profile)
    assert args[args.index("-d") + 1] == profile.conninfo


def test_connection_string_escapes_backslashes():
    profile = ConnectionProfile(id="p", name="Windows user", host="h", port=5432,
                                database="shop", user="CORP\\svc")

    assert profile.conninfo.endswith("user='CORP\\\\svc'")


def test_count_rows_without_tables_runs_nothing(runner, source_profile):
    assert SchemaCatalogReader(runner).count_rows(source_profile, []) == {}
    assert runner.calls == []


def test_normalize_table_names():
    assert normalize_table_names(["users", "sales.orders"]) == ["public.users", "sales.orders"]


def test_verifier_samples_largest_tables_first(runner):
    verifier = CloneVerifier(SchemaCatalogReader(runner), sample_size=2)
    tables = [
        TableInfo("public", "b", 10, 0),
        TableInfo("public", "a", 10, 0),
        TableInfo("public", "c", 500, 0),
        TableInfo("public", "d", 1, 0),
    ]

    assert [t.name for t in verifier.sample(tables)] == ["c", "a"]


def test_verifier_reports_row_count_drift(runner, source_profile, destination_profile):
    tables = [TableInfo("public", "users", 42, 0)]
    runner.on("psql", "dbname='shop_staging'", "information_schema.tables",
              stdout=catalog_rows(("public", "users", 40, 0)))
    runner.on("psql", "dbname='shop'", "count(*)", stdout=catalog_rows(("public.users", 42)))
    runner.on("psql", "dbname='shop_staging'", "count(*)", stdout=catalog_rows(("public.users", 41)))
    verifier = CloneVerifier(SchemaCatalogReader(runner))

    with pytest.raises(VerificationMismatch, match="source 42, destination 41"):
        verifier.verify(source_profile, destination_profile, tables, [], compare_rows=True)


def test_verifier_ignores_excluded_tables(runner, source_profile, destination_profile):
    tables = [TableInfo("public", "users", 42, 0), TableInfo("public", "audit_log", 900, 0)]
    runner.on("psql", "information_schema.tables", stdout=catalog_rows(("public", "users", 42, 0)))

    summary = CloneVerifier(SchemaCatalogReader(runner)).verify(
        source_profile, destination_profile, tables, ["audit_log"], compare_rows=False
    )

    assert summary == "Verified 1 table(s) in destination"
