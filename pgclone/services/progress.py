"""Progress and log fan-out for clone and schema runs."""
import logging
import queue
import re
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from ..core.logging import get_logger
from ..domain.models import CloneProgress, CloneStage, CloneType, LogLevel, LogLine, utc_now

# Relative cost of each stage; normalized over the stages a run actually plans
STAGE_WEIGHTS: Dict[CloneStage, int] = {
    CloneStage.BACKUP: 10,
    CloneStage.CLEANING: 5,
    CloneStage.DUMPING: 40,
    CloneStage.RESTORING: 40,
    CloneStage.VERIFYING: 5,
}

_LOGGING_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

# Tool diagnostics look like "pg_restore: error: ...", "psql:x.sql:3: ERROR:  ..."
_ERROR_RE = re.compile(r"\b(error|fatal|panic):", re.IGNORECASE)
_WARNING_RE = re.compile(r"\bwarning:", re.IGNORECASE)

# Verbose output lines that mark one more table done
DUMP_TABLE_RE = re.compile(r"dumping contents of table")
RESTORE_TABLE_RE = re.compile(r"processing data for table")
COPY_DONE_RE = re.compile(r"^COPY \d+$")

_END = object()


def classify_tool_line(line: str) -> LogLevel:
    """Log level of a raw line written by a client tool."""
    if _ERROR_RE.search(line):
        return LogLevel.ERROR
    if _WARNING_RE.search(line):
        return LogLevel.WARNING
    return LogLevel.INFO


class StagePlan:
    """Percentage band of every planned stage, computed once per run."""

    def __init__(self, stages: Sequence[CloneStage], weights: Optional[Dict[CloneStage, int]] = None):
        weights = weights or STAGE_WEIGHTS
        self.stages: Tuple[CloneStage, ...] = tuple(stages)
        total = sum(weights.get(stage, 0) for stage in self.stages) or 1
        self._bounds: Dict[CloneStage, Tuple[float, float]] = {}
        done = 0
        for stage in self.stages:
            weight = weights.get(stage, 0)
            self._bounds[stage] = (done * 100.0 / total, (done + weight) * 100.0 / total)
            done += weight

    @classmethod
    def for_clone(cls, clone_type: CloneType, create_backup: bool, clean_destination: bool) -> "StagePlan":
        stages = []
        if create_backup:
            stages.append(CloneStage.BACKUP)
        if clean_destination:
            stages.append(CloneStage.CLEANING)
        stages.extend([CloneStage.DUMPING, CloneStage.RESTORING, CloneStage.VERIFYING])
        return cls(stages)

    @classmethod
    def for_schema(cls) -> "StagePlan":
        return cls([CloneStage.DUMPING], {CloneStage.DUMPING: 1})

    def includes(self, stage: CloneStage) -> bool:
        return stage in self._bounds

    def bounds(self, stage: CloneStage) -> Tuple[float, float]:
        if stage is CloneStage.COMPLETED:
            return 100.0, 100.0
        return self._bounds.get(stage, (0.0, 0.0))

    def percent(self, stage: CloneStage, fraction: float = 0.0) -> int:
        """Overall percentage for a position inside a stage."""
        low, high = self.bounds(stage)
        fraction = min(max(fraction, 0.0), 1.0)
        return int(low + (high - low) * fraction)


@dataclass(frozen=True)
class ProgressEvent:
    progress: CloneProgress


@dataclass(frozen=True)
class LogEvent:
    line: LogLine


RunEvent = Union[ProgressEvent, LogEvent]


class EventStream:
    """Iterable view of one subscriber's events; ends when the run closes."""

    def __init__(self, poll_interval: float = 0.2):
        self._queue: "queue.Queue" = queue.Queue()
        self._poll_interval = poll_interval
        self._ended = False

    def _put(self, event: RunEvent) -> None:
        self._queue.put(event)

    def _close(self) -> None:
        self._queue.put(_END)

    @property
    def ended(self) -> bool:
        return self._ended

    def get(self, timeout: Optional[float] = None) -> Optional[RunEvent]:
        """Next event, or None on timeout or once the stream has ended."""
        if self._ended:
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _END:
            self._ended = True
            return None
        return item

    def __iter__(self) -> Iterator[RunEvent]:
        # Short waits keep the consuming thread responsive to signals
        while not self._ended:
            event = self.get(timeout=self._poll_interval)
            if event is not None:
                yield event


class ProgressReporter:
    """Publishes progress snapshots and log lines of one run.

    One writer (the run) and any number of subscribers. Tool output arrives
    from reader threads, so every mutation happens under one lock, which also
    keeps the order subscribers see equal to the order of ``lines``. Once a
    terminal snapshot is published further progress updates are ignored.
    """

    def __init__(
        self,
        plan: Optional[StagePlan] = None,
        logger_name: str = "pgclone.run",
        clock: Callable[[], object] = utc_now
    ):
        self._lock = threading.RLock()
        self._subscribers: List[EventStream] = []
        self._lines: List[LogLine] = []
        self._last: Optional[CloneProgress] = None
        self._stage = CloneStage.PREPARING
        self._finished = False
        self._closed = False
        self._plan = plan or StagePlan([])
        self._logger = get_logger(logger_name)
        self._clock = clock

    @property
    def plan(self) -> StagePlan:
        return self._plan

    def set_plan(self, plan: StagePlan) -> None:
        with self._lock:
            self._plan = plan

    @property
    def current_stage(self) -> CloneStage:
        return self._stage

    @property
    def last_progress(self) -> Optional[CloneProgress]:
        return self._last

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def lines(self) -> List[LogLine]:
        """Snapshot of every log line so far, in publication order."""
        with self._lock:
            return list(self._lines)

    def subscribe(self) -> EventStream:
        """Open an event stream; it starts with the latest progress snapshot."""
        stream = EventStream()
        with self._lock:
            if self._last is not None:
                stream._put(ProgressEvent(self._last))
            if self._closed:
                stream._close()
            else:
                self._subscribers.append(stream)
        return stream

    def close(self) -> None:
        """End every subscriber stream."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for stream in self._subscribers:
                stream._close()
            self._subscribers = []

    # Progress

    def stage(self, stage: CloneStage, message: str) -> None:
        """Enter a stage: publish its lower bound and a stage marker log line."""
        with self._lock:
            if self._finished:
                self._logger.debug(f"Ignoring transition to {stage.value} after the run finished")
                return
            self._stage = stage
            self._append(LogLine(level=LogLevel.INFO, message=message, timestamp=self._clock(), stage=stage))
            self._publish(CloneProgress(stage=stage, progress=self._plan.percent(stage), message=message))

    def advance(self, fraction: float, message: Optional[str] = None) -> None:
        """Move inside the current stage; never moves progress backwards."""
        with self._lock:
            if self._finished:
                return
            percent = self._plan.percent(self._stage, fraction)
            if self._last is not None and percent <= self._last.progress:
                return
            text = message or (self._last.message if self._last else "")
            self._publish(CloneProgress(stage=self._stage, progress=percent, message=text))

    def complete(self, message: str) -> None:
        with self._lock:
            if self._finished:
                return
            self._stage = CloneStage.COMPLETED
            self._append(LogLine(level=LogLevel.SUCCESS, message=message, timestamp=self._clock(),
                                 stage=CloneStage.COMPLETED))
            self._publish(CloneProgress(stage=CloneStage.COMPLETED, progress=100, message=message,
                                        is_complete=True))
            self._finished = True

    def fail(self, message: str) -> None:
        """Publish the terminal error snapshot; progress stays where it was."""
        with self._lock:
            if self._finished:
                return
            self._stage = CloneStage.ERROR
            self._append(LogLine(level=LogLevel.ERROR, message=message, timestamp=self._clock(),
                                 stage=CloneStage.ERROR))
            self._publish(CloneProgress(stage=CloneStage.ERROR, progress=self._current_percent(),
                                        message=message, is_complete=True, is_error=True))
            self._finished = True

    def cancel(self, message: str = "Operation cancelled by user") -> None:
        """Publish the terminal snapshot of a cancelled run at its current stage."""
        with self._lock:
            if self._finished:
                return
            self._append(LogLine(level=LogLevel.WARNING, message=message, timestamp=self._clock()))
            self._publish(CloneProgress(stage=self._stage, progress=self._current_percent(),
                                        message=message, is_complete=True))
            self._finished = True

    # Logs

    def log(self, level: LogLevel, message: str, source: Optional[str] = None) -> LogLine:
        line = LogLine(level=level, message=message, timestamp=self._clock(), source=source)
        with self._lock:
            self._append(line)
        return line

    def info(self, message: str) -> LogLine:
        return self.log(LogLevel.INFO, message)

    def warning(self, message: str) -> LogLine:
        return self.log(LogLevel.WARNING, message)

    def error(self, message: str) -> LogLine:
        return self.log(LogLevel.ERROR, message)

    def success(self, message: str) -> LogLine:
        return self.log(LogLevel.SUCCESS, message)

    def tool_line(self, tool: str, stream: str, line: str) -> None:
        """Line observer for child processes: records raw tool output."""
        text = line.rstrip()
        if not text:
            return
        entry = LogLine(level=classify_tool_line(text), message=text, timestamp=self._clock(), source=tool)
        with self._lock:
            self._append(entry, raw=True)

    # Internals, called with the lock held

    def _current_percent(self) -> int:
        return self._last.progress if self._last else 0

    def _append(self, line: LogLine, raw: bool = False) -> None:
        self._lines.append(line)
        if raw:
            self._logger.debug(line.format())
        else:
            self._logger.log(_LOGGING_LEVELS[line.level], line.format())
        self._broadcast(LogEvent(line))

    def _publish(self, progress: CloneProgress) -> None:
        if self._last is not None and progress.progress < self._last.progress:
            progress = CloneProgress(
                stage=progress.stage,
                progress=self._last.progress,
                message=progress.message,
                is_complete=progress.is_complete,
                is_error=progress.is_error
            )
        self._last = progress
        self._broadcast(ProgressEvent(progress))

    def _broadcast(self, event: RunEvent) -> None:
        for stream in self._subscribers:
            stream._put(event)


class LineProgressEstimator:
    """Turns verbose tool lines into a completed fraction of a known table count."""

    def __init__(self, pattern: "re.Pattern", total: int):
        self.pattern = pattern
        self.total = total
        self.count = 0

    def feed(self, line: str) -> Optional[float]:
        """Returns the new fraction when the line marks progress, else None."""
        if self.total <= 0 or not self.pattern.search(line):
            return None
        self.count += 1
        return min(self.count / self.total, 1.0)

    def observer(
        self,
        reporter: ProgressReporter,
        message: Callable[[int, int], str]
    ) -> Callable[[str, str, str], None]:
        """Line observer that records the raw line and then advances the reporter."""
        def on_line(tool: str, stream: str, line: str) -> None:
            reporter.tool_line(tool, stream, line)
            fraction = self.feed(line)
            if fraction is not None:
                reporter.advance(fraction, message(min(self.count, self.total), self.total))
        return on_line
