from pgclone.domain.models import CloneStage, CloneType, LogLevel
from pgclone.services.progress import (
    COPY_DONE_RE,
    DUMP_TABLE_RE,
    LineProgressEstimator,
    LogEvent,
    ProgressEvent,
    ProgressReporter,
    StagePlan,
    classify_tool_line,
)


def test_stage_plan_normalizes_over_planned_stages():
    plan = StagePlan.for_clone(CloneType.BOTH, create_backup=False, clean_destination=False)

    assert plan.stages == (CloneStage.DUMPING, CloneStage.RESTORING, CloneStage.VERIFYING)
    assert plan.percent(CloneStage.DUMPING) == 0
    assert plan.percent(CloneStage.RESTORING) == 47
    assert plan.percent(CloneStage.VERIFYING, 1.0) == 100
    assert plan.percent(CloneStage.COMPLETED) == 100
    assert not plan.includes(CloneStage.BACKUP)


def test_stage_plan_with_every_stage():
    plan = StagePlan.for_clone(CloneType.DATA, create_backup=True, clean_destination=True)

    assert plan.bounds(CloneStage.BACKUP) == (0.0, 10.0)
    assert plan.bounds(CloneStage.CLEANING) == (10.0, 15.0)
    assert plan.percent(CloneStage.DUMPING, 0.5) == 35
    # Fractions are clamped
    assert plan.percent(CloneStage.RESTORING, 3.0) == 95


def test_classify_tool_line():
    assert classify_tool_line('pg_restore: error: could not execute query') is LogLevel.ERROR
    assert classify_tool_line('psql:/tmp/x.sql:12: ERROR:  duplicate key') is LogLevel.ERROR
    assert classify_tool_line('FATAL: password authentication failed') is LogLevel.ERROR
    assert classify_tool_line('pg_dump: warning: there are circular foreign-key constraints') is LogLevel.WARNING
    assert classify_tool_line('pg_dump: dumping contents of table "public.users"') is LogLevel.INFO


def test_reporter_replays_last_progress_to_new_subscribers():
    reporter = ProgressReporter(plan=StagePlan.for_schema())
    reporter.stage(CloneStage.DUMPING, "Extracting database schema")

    stream = reporter.subscribe()
    reporter.close()

    events = list(stream)
    assert len(events) == 1
    assert events[0].progress.stage is CloneStage.DUMPING


def test_reporter_never_moves_backwards():
    reporter = ProgressReporter(plan=StagePlan.for_clone(CloneType.BOTH, False, False))
    reporter.stage(CloneStage.DUMPING, "dump")
    reporter.advance(0.5, "half")
    reporter.advance(0.25, "less")

    assert reporter.last_progress.progress == 23
    assert reporter.last_progress.message == "half"


def test_fail_keeps_progress_and_marks_error():
    reporter = ProgressReporter(plan=StagePlan.for_clone(CloneType.BOTH, False, False))
    reporter.stage(CloneStage.RESTORING, "restore")
    reporter.fail("pg_restore exited with code 1")

    last = reporter.last_progress
    assert last.stage is CloneStage.ERROR
    assert last.progress == 47
    assert last.is_error and last.is_complete
    assert reporter.lines[-1].level is LogLevel.ERROR


def test_terminal_state_ignores_later_updates():
    reporter = ProgressReporter(plan=StagePlan.for_schema())
    reporter.stage(CloneStage.DUMPING, "dump")
    reporter.complete("done")
    reporter.stage(CloneStage.DUMPING, "again")
    reporter.fail("late failure")
    reporter.cancel()

    last = reporter.last_progress
    assert last.stage is CloneStage.COMPLETED
    assert last.progress == 100
    assert not last.is_error


def test_cancel_stays_at_current_stage():
    reporter = ProgressReporter(plan=StagePlan.for_schema())
    reporter.stage(CloneStage.DUMPING, "dump")
    reporter.cancel("stopped")

    last = reporter.last_progress
    assert last.is_cancelled
    assert last.stage is CloneStage.DUMPING
    assert reporter.lines[-1].level is LogLevel.WARNING


def test_tool_lines_are_classified_and_blank_lines_dropped():
    reporter = ProgressReporter()
    stream = reporter.subscribe()
    reporter.tool_line("pg_dump", "stderr", "")
    reporter.tool_line("pg_dump", "stderr", "pg_dump: warning: something odd")
    reporter.close()

    events = [e for e in stream if isinstance(e, LogEvent)]
    assert len(events) == 1
    assert events[0].line.source == "pg_dump"
    assert events[0].line.level is LogLevel.WARNING


def test_stage_marker_lines_carry_the_stage():
    reporter = ProgressReporter(plan=StagePlan.for_schema())
    reporter.stage(CloneStage.DUMPING, "Extracting database schema")

    marker = reporter.lines[0]
    assert marker.stage is CloneStage.DUMPING
    assert marker.to_dict()["stage"] == "dumping"


def test_line_estimator_counts_matching_lines():
    estimator = LineProgressEstimator(DUMP_TABLE_RE, total=4)

    assert estimator.feed("pg_dump: reading schemas") is None
    assert estimator.feed('pg_dump: dumping contents of table "public.a"') == 0.25
    assert estimator.feed('pg_dump: dumping contents of table "public.b"') == 0.5


def test_line_estimator_without_total_reports_nothing():
    estimator = LineProgressEstimator(COPY_DONE_RE, total=0)
    assert estimator.feed("COPY 12") is None


def test_estimator_observer_drives_reporter():
    reporter = ProgressReporter(plan=StagePlan.for_clone(CloneType.DATA, False, False))
    reporter.stage(CloneStage.RESTORING, "restore")
    stream = reporter.subscribe()
    on_line = LineProgressEstimator(COPY_DONE_RE, total=2).observer(
        reporter, lambda n, total: f"Loaded table {n} of {total}"
    )

    on_line("psql", "stdout", "SET")
    on_line("psql", "stdout", "COPY 10")
    reporter.close()

    progress = [e.progress for e in stream if isinstance(e, ProgressEvent)]
    assert progress[-1].message == "Loaded table 1 of 2"
    assert progress[-1].progress == 70
