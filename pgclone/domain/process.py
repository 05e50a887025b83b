"""Handles for running external processes.

A ``ProcessHandle`` is what every process runner hands back: two live line
streams (stdout, stderr) and a future that resolves to a ``ProcessExit`` once
the child is gone and both streams have been drained. The handle does not know
how the process was started, so scripted doubles in tests build the same
objects the subprocess based runner does.
"""
import queue
import threading
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Deque, Iterator, List, Optional

# Lines kept per stream for error reports
TAIL_LINES = 20

_END = object()


@dataclass(frozen=True)
class ProcessExit:
    """Final status of a process.

    ``terminated`` is set only when the process was killed through its handle
    (cancellation); an external signal shows up as a negative ``code``.
    """
    code: Optional[int]
    terminated: bool = False

    @property
    def success(self) -> bool:
        return self.code == 0 and not self.terminated


@dataclass
class ProcessResult:
    """Collected output of a finished process."""
    tool: str
    exit: ProcessExit
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)

    @property
    def stdout_text(self) -> str:
        return "\n".join(self.stdout)


class LineStream:
    """Live, single-consumer sequence of lines from one output pipe.

    The producer pushes lines as they arrive and closes the stream at EOF.
    Iterating blocks until the next line is available and stops at close.
    The last ``TAIL_LINES`` lines stay available through ``tail`` even after
    they have been consumed.
    """

    def __init__(self, name: str):
        self.name = name
        self._queue: "queue.Queue" = queue.Queue()
        self._tail: Deque[str] = deque(maxlen=TAIL_LINES)
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self.line_count = 0

    def push(self, line: str) -> None:
        with self._lock:
            if self._closed.is_set():
                raise RuntimeError(f"Stream {self.name} is closed")
            self._tail.append(line)
            self.line_count += 1
            self._queue.put(line)

    def close(self) -> None:
        with self._lock:
            if not self._closed.is_set():
                self._closed.set()
                self._queue.put(_END)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def tail(self) -> List[str]:
        with self._lock:
            return list(self._tail)

    def __iter__(self) -> Iterator[str]:
        while True:
            item = self._queue.get()
            if item is _END:
                # Leave the marker for any later iteration
                self._queue.put(_END)
                return
            yield item

    def read_all(self) -> List[str]:
        """Block until the stream closes and return every unread line."""
        return list(self)


class ProcessHandle:
    """A running (or finished) external process."""

    def __init__(
        self,
        tool: str,
        stdout: LineStream,
        stderr: LineStream,
        exit_future: "Future[ProcessExit]",
        killer: Optional[Callable[[], None]] = None,
        pid: Optional[int] = None
    ):
        self.tool = tool
        self.stdout = stdout
        self.stderr = stderr
        self.exit_future = exit_future
        self.pid = pid
        self._killer = killer
        self._kill_requested = threading.Event()

    @property
    def kill_requested(self) -> bool:
        return self._kill_requested.is_set()

    @property
    def done(self) -> bool:
        return self.exit_future.done()

    def kill(self) -> None:
        """Terminate the process and all its descendants.

        The exit future then resolves with ``terminated=True``. Killing a
        finished process is a no-op.
        """
        if self.done or self._kill_requested.is_set():
            return
        self._kill_requested.set()
        if self._killer:
            self._killer()

    def wait(self, timeout: Optional[float] = None) -> ProcessExit:
        """Wait for the exit status; output is fully delivered when this returns."""
        return self.exit_future.result(timeout=timeout)
