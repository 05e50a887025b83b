from pathlib import Path

import pytest

from pgclone.core.exceptions import ValidationError
from pgclone.domain.models import CloneOptions, CloneStage, CloneStatus, CloneType, LogLevel, ToolPaths
from pgclone.services.clone import RESTORE_SESSION_SETTINGS, CloneOrchestrator, backup_file_name
from pgclone.services.history import HistoryRecorder
from pgclone.services.progress import LogEvent, ProgressEvent

from conftest import catalog_rows

SOURCE_DB = "dbname='shop'"
DESTINATION_DB = "dbname='shop_staging'"
TABLES = "information_schema.tables"

SOURCE_TABLES = catalog_rows(
    ("public", "orders", 5, 8192),
    ("public", "users", 10, 16384),
)


def make_orchestrator(store, runner, tools, config, clock, **overrides):
    options = CloneOptions(source_id=overrides.pop("source_id", "src"),
                           destination_id=overrides.pop("destination_id", "dst"), **overrides)
    return CloneOrchestrator(
        options,
        profiles=store,
        recorder=HistoryRecorder(store, clock=clock),
        runner=runner,
        tools=tools,
        config=config,
        clock=clock
    )


def script_healthy_catalogs(runner, destination_tables=SOURCE_TABLES):
    runner.on("psql", SOURCE_DB, TABLES, stdout=SOURCE_TABLES)
    runner.on("psql", DESTINATION_DB, TABLES, stdout=destination_tables)
    counts = catalog_rows(("public.users", 10), ("public.orders", 5))
    runner.on("psql", SOURCE_DB, "count(*)", stdout=counts)
    runner.on("psql", DESTINATION_DB, "count(*)", stdout=counts)


def stage_markers(reporter):
    return [line.stage for line in reporter.lines if line.stage is not None]


def files_in(directory: Path):
    return sorted(p.name for p in directory.iterdir()) if directory.exists() else []


def test_full_clone_runs_every_stage_in_order(store, runner, tools, config, clock):
    script_healthy_catalogs(runner)
    orchestrator = make_orchestrator(store, runner, tools, config, clock,
                                     clean_destination=True, create_backup=True)
    orchestrator.prepare()

    entry = orchestrator.run()

    assert entry.status is CloneStatus.SUCCESS
    assert entry.error_message is None
    assert stage_markers(orchestrator.reporter) == [
        CloneStage.PREPARING,
        CloneStage.BACKUP,
        CloneStage.CLEANING,
        CloneStage.DUMPING,
        CloneStage.RESTORING,
        CloneStage.VERIFYING,
        CloneStage.COMPLETED,
    ]
    assert runner.tools_called == [
        "psql", "pg_dump", "psql", "pg_dump", "pg_restore", "psql", "psql", "psql"
    ]
    last = orchestrator.reporter.last_progress
    assert last.progress == 100
    assert last.is_complete and not last.is_error


def test_full_clone_records_history_and_keeps_backup(store, runner, tools, config, clock):
    script_healthy_catalogs(runner)
    orchestrator = make_orchestrator(store, runner, tools, config, clock)
    orchestrator.prepare()

    entry = orchestrator.run()

    history = store.list_history()
    assert [h.id for h in history] == [entry.id]
    assert history[0].source_name == "Production"
    assert history[0].destination_name == "Staging"
    assert history[0].duration >= 0

    expected_backup = config.backup_dir / "shop_staging_backup_20240301_120000.sql"
    assert entry.backup_path == str(expected_backup)
    assert expected_backup.exists()
    # The temporary dump is gone
    assert files_in(config.temp_dir) == []


def test_tools_receive_credentials_through_environment(store, runner, tools, config, clock):
    script_healthy_catalogs(runner)
    orchestrator = make_orchestrator(store, runner, tools, config, clock, create_backup=False)
    orchestrator.prepare()
    orchestrator.run()

    dump = [c for c in runner.calls_of("pg_dump") if "--verbose" in c.args][0]
    assert dump.env["PGPASSWORD"] == "s3cret"
    assert "s3cret" not in dump.command_line
    restore = runner.calls_of("pg_restore")[0]
    assert restore.env["PGSSLMODE"] == "require"
    assert "--no-owner" in restore.args and "--no-privileges" in restore.args
    assert restore.args[restore.args.index("-j") + 1] == "2"


def test_progress_is_monotone_and_reports_tables(store, runner, tools, config, clock):
    script_healthy_catalogs(runner)
    runner.on("pg_dump", "--verbose", stderr=[
        'pg_dump: dumping contents of table "public.orders"',
        'pg_dump: dumping contents of table "public.users"',
    ])
    orchestrator = make_orchestrator(store, runner, tools, config, clock, create_backup=False)
    orchestrator.prepare()
    stream = orchestrator.reporter.subscribe()

    orchestrator.run()

    events = list(stream)
    percents = [e.progress.progress for e in events if isinstance(e, ProgressEvent)]
    assert percents == sorted(percents)
    assert percents[-1] == 100
    messages = [e.progress.message for e in events if isinstance(e, ProgressEvent)]
    assert "Dumped table 1 of 2" in messages
    assert "Dumped table 2 of 2" in messages
    raw = [e.line for e in events if isinstance(e, LogEvent) and e.line.source == "pg_dump"]
    assert len(raw) == 2


def test_backup_failure_stops_the_clone(store, runner, tools, config, clock):
    runner.on("pg_dump", DESTINATION_DB, "-Fp", exit_code=1,
              stderr=["pg_dump: error: connection to server failed"])
    orchestrator = make_orchestrator(store, runner, tools, config, clock, clean_destination=True)
    orchestrator.prepare()

    entry = orchestrator.run()

    assert entry.status is CloneStatus.ERROR
    assert entry.error_message.startswith("Backup failed: pg_dump exited with code 1")
    assert "connection to server failed" in entry.error_message
    assert entry.backup_path is None
    # Partial backup removed, nothing destructive ran
    assert files_in(config.backup_dir) == []
    assert runner.tools_called == ["psql", "pg_dump"]
    last = orchestrator.reporter.last_progress
    assert last.stage is CloneStage.ERROR
    assert last.is_error and last.is_complete
    assert last.progress == 0


def test_failure_after_backup_points_to_the_backup(store, runner, tools, config, clock):
    runner.on("psql", "DROP SCHEMA", exit_code=3, stderr=["psql: error: permission denied"])
    orchestrator = make_orchestrator(store, runner, tools, config, clock, clean_destination=True)
    orchestrator.prepare()

    entry = orchestrator.run()

    assert entry.status is CloneStatus.ERROR
    assert entry.error_message.startswith("Cleaning failed: psql exited with code 3")
    assert "A backup of the destination was saved before the clone:" in entry.error_message
    assert Path(entry.backup_path).exists()
    assert "pg_restore" not in runner.tools_called


def test_restore_with_only_warnings_succeeds(store, runner, tools, config, clock):
    script_healthy_catalogs(runner)
    runner.on("pg_restore", exit_code=1, stderr=["pg_restore: warning: errors ignored on restore: 0"])
    orchestrator = make_orchestrator(store, runner, tools, config, clock, create_backup=False)
    orchestrator.prepare()

    entry = orchestrator.run()

    assert entry.status is CloneStatus.SUCCESS
    warnings = [l.message for l in entry.logs if l.level is LogLevel.WARNING and l.source is None]
    assert "pg_restore finished with warnings (exit code 1)" in warnings


def test_restore_errors_fail_the_clone(store, runner, tools, config, clock):
    runner.on("pg_restore", exit_code=1, stderr=[
        'pg_restore: error: could not execute query: ERROR:  relation "users" already exists',
    ])
    orchestrator = make_orchestrator(store, runner, tools, config, clock, create_backup=False)
    orchestrator.prepare()

    entry = orchestrator.run()

    assert entry.status is CloneStatus.ERROR
    assert entry.error_message.startswith("Restoring failed: pg_restore exited with code 1")
    assert 'relation "users" already exists' in entry.error_message
    assert files_in(config.temp_dir) == []


def test_verification_mismatch_is_only_a_warning(store, runner, tools, config, clock):
    script_healthy_catalogs(runner, destination_tables=catalog_rows(("public", "users", 10, 16384)))
    orchestrator = make_orchestrator(store, runner, tools, config, clock, create_backup=False)
    orchestrator.prepare()

    entry = orchestrator.run()

    assert entry.status is CloneStatus.SUCCESS
    warnings = [l.message for l in entry.logs if l.level is LogLevel.WARNING]
    assert "Verification: 1 table(s) missing in destination: public.orders" in warnings


def test_cancel_while_dumping(store, runner, tools, config, clock):
    orchestrator = make_orchestrator(store, runner, tools, config, clock, create_backup=False)
    orchestrator.prepare()
    runner.on("pg_dump", "--verbose", hang=True, action=orchestrator.cancel)

    entry = orchestrator.run()

    assert entry.status is CloneStatus.CANCELLED
    assert entry.error_message is None
    assert "pg_restore" not in runner.tools_called
    assert runner.handles[-1].kill_requested
    last = orchestrator.reporter.last_progress
    assert last.is_cancelled
    assert last.stage is CloneStage.DUMPING
    assert not last.is_error
    assert files_in(config.temp_dir) == []
    assert store.list_history()[0].status is CloneStatus.CANCELLED


def test_same_source_and_destination_is_rejected(store, runner, tools, config, clock):
    orchestrator = make_orchestrator(store, runner, tools, config, clock, source_id="src", destination_id="src")

    with pytest.raises(ValidationError):
        orchestrator.prepare()

    assert runner.calls == []
    assert store.list_history() == []


def test_unknown_profile_is_rejected(store, runner, tools, config, clock):
    orchestrator = make_orchestrator(store, runner, tools, config, clock, destination_id="missing")

    with pytest.raises(ValidationError, match="Destination connection not found"):
        orchestrator.prepare()


def test_missing_tool_fails_before_spawning(store, runner, config, clock):
    tools = ToolPaths(psql="/usr/bin/psql", pg_dump=None, pg_restore="/usr/bin/pg_restore")
    orchestrator = make_orchestrator(store, runner, tools, config, clock)
    orchestrator.prepare()

    entry = orchestrator.run()

    assert entry.status is CloneStatus.ERROR
    assert "pg_dump not found" in entry.error_message
    assert runner.calls == []
    assert orchestrator.reporter.last_progress.stage is CloneStage.ERROR


def test_excluded_tables_become_exact_patterns(store, runner, tools, config, clock):
    orchestrator = make_orchestrator(store, runner, tools, config, clock, create_backup=False,
                                     exclude_tables=["public.audit_log", "events"])
    orchestrator.prepare()
    orchestrator.run()

    dump = [c for c in runner.calls_of("pg_dump") if "--verbose" in c.args][0]
    assert '--exclude-table="public"."audit_log"' in dump.args
    assert '--exclude-table="public"."events"' in dump.args


def test_structure_clone_dumps_schema_only(store, runner, tools, config, clock):
    script_healthy_catalogs(runner)
    orchestrator = make_orchestrator(store, runner, tools, config, clock, create_backup=False,
                                     clone_type=CloneType.STRUCTURE)
    orchestrator.prepare()
    entry = orchestrator.run()

    assert entry.status is CloneStatus.SUCCESS
    dump = runner.calls_of("pg_dump")[0]
    assert "--schema-only" in dump.args
    assert "-Fc" in dump.args
    assert dump.args[dump.args.index("-Z") + 1] == "1"
    assert any(a.startswith("--file=") and a.endswith(".dump") for a in dump.args)
    # Row counts are only compared when data was copied
    assert not any("count(*)" in c.command_line for c in runner.calls_of("psql"))


def test_data_clone_replays_plain_dump_with_psql(store, runner, tools, config, clock):
    script_healthy_catalogs(runner)
    orchestrator = make_orchestrator(store, runner, tools, config, clock, create_backup=False,
                                     clean_destination=True, clone_type="data",
                                     exclude_tables=["public.audit_log"])
    orchestrator.prepare()
    entry = orchestrator.run()

    assert entry.status is CloneStatus.SUCCESS
    assert "pg_restore" not in runner.tools_called
    dump = runner.calls_of("pg_dump")[0]
    assert "-Fp" in dump.args
    assert "--data-only" in dump.args
    assert "--disable-triggers" in dump.args

    psql_calls = runner.calls_of("psql")
    clean = [c for c in psql_calls if "TRUNCATE TABLE" in c.command_line][0]
    assert "'public.audit_log'" in clean.command_line
    restore = [c for c in psql_calls if "-f" in c.args][0]
    assert RESTORE_SESSION_SETTINGS in restore.args
    assert restore.args[restore.args.index("-f") + 1].endswith(".sql")
    assert "ON_ERROR_STOP=1" in restore.args


def test_backup_file_name_is_safe_for_filesystems(clock):
    assert backup_file_name("my db/prod", clock()) == "my_db_prod_backup_20240301_120000.sql"


CANCEL_POINTS = [
    (CloneStage.PREPARING, ("psql", SOURCE_DB, TABLES)),
    (CloneStage.BACKUP, ("pg_dump", DESTINATION_DB, "-Fp")),
    (CloneStage.CLEANING, ("psql", "DROP SCHEMA")),
    (CloneStage.DUMPING, ("pg_dump", "--verbose")),
    (CloneStage.RESTORING, ("pg_restore",)),
    (CloneStage.VERIFYING, ("psql", DESTINATION_DB, TABLES)),
]


@pytest.mark.parametrize("stage, rule", CANCEL_POINTS, ids=[stage.value for stage, _ in CANCEL_POINTS])
def test_cancel_stops_at_the_running_stage(stage, rule, store, runner, tools, config, clock):
    orchestrator = make_orchestrator(store, runner, tools, config, clock,
                                     clean_destination=True, create_backup=True)
    orchestrator.prepare()
    runner.on(*rule, hang=True, action=orchestrator.cancel)
    script_healthy_catalogs(runner)

    entry = orchestrator.run()

    assert entry.status is CloneStatus.CANCELLED
    assert entry.error_message is None
    assert stage_markers(orchestrator.reporter)[-1] is stage
    last = orchestrator.reporter.last_progress
    assert last.is_cancelled
    assert last.stage is stage
    assert not last.is_error
    assert runner.handles[-1].kill_requested
    assert files_in(config.temp_dir) == []
    assert store.list_history()[0].status is CloneStatus.CANCELLED


def test_cancel_during_backup_removes_the_partial_file(store, runner, tools, config, clock):
    orchestrator = make_orchestrator(store, runner, tools, config, clock, create_backup=True)
    orchestrator.prepare()
    runner.on("pg_dump", DESTINATION_DB, "-Fp", hang=True, action=orchestrator.cancel)

    entry = orchestrator.run()

    assert entry.status is CloneStatus.CANCELLED
    assert entry.backup_path is None
    assert files_in(config.backup_dir) == []
    assert runner.tools_called == ["psql", "pg_dump"]


def test_skipped_backup_and_cleaning_have_no_stage_markers(store, runner, tools, config, clock):
    script_healthy_catalogs(runner)
    orchestrator = make_orchestrator(store, runner, tools, config, clock,
                                     clean_destination=False, create_backup=False)
    orchestrator.prepare()

    entry = orchestrator.run()

    assert entry.status is CloneStatus.SUCCESS
    assert stage_markers(orchestrator.reporter) == [
        CloneStage.PREPARING,
        CloneStage.DUMPING,
        CloneStage.RESTORING,
        CloneStage.VERIFYING,
        CloneStage.COMPLETED,
    ]
    assert runner.tools_called == ["psql", "pg_dump", "pg_restore", "psql", "psql", "psql"]


def test_data_clone_into_existing_tables_with_an_exclusion(store, runner, tools, config, clock):
    script_healthy_catalogs(runner)
    orchestrator = make_orchestrator(store, runner, tools, config, clock,
                                     clone_type=CloneType.DATA, exclude_tables=["public.orders"],
                                     clean_destination=False, create_backup=False)
    orchestrator.prepare()

    entry = orchestrator.run()

    assert entry.status is CloneStatus.SUCCESS
    assert entry.backup_path is None
    assert orchestrator.reporter.last_progress.stage is CloneStage.COMPLETED
    dump = runner.calls_of("pg_dump")[0]
    assert "--data-only" in dump.args
    assert '--exclude-table="public"."orders"' in dump.args
    assert not any("TRUNCATE" in c.command_line for c in runner.calls_of("psql"))


def test_truncate_blocked_by_excluded_table_explains_itself(store, runner, tools, config, clock):
    runner.on("psql", "TRUNCATE TABLE", exit_code=3, stderr=[
        "psql:<stdin>:1: ERROR:  cannot truncate a table referenced in a foreign key constraint",
        'DETAIL:  Table "audit_log" references "users".',
    ])
    orchestrator = make_orchestrator(store, runner, tools, config, clock, clone_type=CloneType.DATA,
                                     clean_destination=True, create_backup=False,
                                     exclude_tables=["public.audit_log"])
    orchestrator.prepare()

    entry = orchestrator.run()

    assert entry.status is CloneStatus.ERROR
    assert entry.error_message.startswith("Cleaning failed: psql exited with code 3")
    assert "An excluded table has a foreign key to a table that would be truncated" in entry.error_message
    assert "pg_dump" not in runner.tools_called
