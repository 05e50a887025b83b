"""Subprocess based runner for the PostgreSQL client tools."""
import os
import shutil
import signal
import subprocess
import sys
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Dict, IO, Mapping, Optional, Sequence

from ..core.exceptions import SpawnFailed, ToolNotFound
from ..core.logging import get_logger
from ..domain.interfaces import LineObserver, ProcessRunnerInterface
from ..domain.process import LineStream, ProcessExit, ProcessHandle

logger = get_logger(__name__)

IS_WINDOWS = sys.platform == "win32"

# Hide console windows for child processes on Windows
CREATE_NO_WINDOW = 0x08000000


def merge_env(extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Current environment with the extra variables laid over it."""
    merged = dict(os.environ)
    if extra:
        merged.update(extra)
    return merged


def _platform_options() -> Dict[str, object]:
    """Popen keyword arguments that put the child in its own process group."""
    if IS_WINDOWS:
        return {"creationflags": CREATE_NO_WINDOW | subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


class ProcessRunner(ProcessRunnerInterface):
    """Runs external tools with their output drained on background threads.

    Each process gets two reader threads (stdout, stderr) and one waiter
    thread. The readers keep the pipes empty so a chatty tool never blocks on a
    full pipe; the waiter resolves the exit future only after both readers have
    delivered their last line.
    """

    def start(
        self,
        executable: str,
        args: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        on_line: Optional[LineObserver] = None,
        tool: Optional[str] = None
    ) -> ProcessHandle:
        """Spawn a process and return its handle.

        Args:
            executable: Tool name or path
            args: Command line arguments (without the executable)
            env: Variables laid over the current environment
            cwd: Working directory
            on_line: Observer called for every output line before it is queued
            tool: Display name for messages (defaults to the executable's stem)

        Returns:
            Handle with live stdout/stderr streams and an exit future

        Raises:
            ToolNotFound: If the executable cannot be resolved
            SpawnFailed: If the OS refuses to start the process
        """
        tool = tool or Path(executable).stem
        resolved = shutil.which(executable)
        if resolved is None:
            raise ToolNotFound(tool, executable)

        command = [resolved, *args]
        logger.debug(f"Starting {tool}: {' '.join(command[1:])}")
        try:
            proc = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=merge_env(env),
                cwd=cwd,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                **_platform_options()
            )
        except FileNotFoundError:
            raise ToolNotFound(tool, executable)
        except OSError as e:
            raise SpawnFailed(tool, str(e))

        stdout = LineStream("stdout")
        stderr = LineStream("stderr")
        exit_future: "Future[ProcessExit]" = Future()
        handle = ProcessHandle(
            tool,
            stdout,
            stderr,
            exit_future,
            killer=lambda: self._kill_tree(proc, tool),
            pid=proc.pid
        )

        readers = [
            threading.Thread(
                target=self._drain,
                args=(proc.stdout, stdout, tool, on_line),
                daemon=True,
                name=f"{tool}-{proc.pid}-stdout"
            ),
            threading.Thread(
                target=self._drain,
                args=(proc.stderr, stderr, tool, on_line),
                daemon=True,
                name=f"{tool}-{proc.pid}-stderr"
            ),
        ]
        for reader in readers:
            reader.start()

        waiter = threading.Thread(
            target=self._wait,
            args=(proc, handle, readers),
            daemon=True,
            name=f"{tool}-{proc.pid}-wait"
        )
        waiter.start()
        return handle

    @staticmethod
    def _drain(
        pipe: IO[str],
        stream: LineStream,
        tool: str,
        on_line: Optional[LineObserver]
    ) -> None:
        """Forward every line of a pipe to the observer and the stream."""
        try:
            for raw in iter(pipe.readline, ""):
                line = raw.rstrip("\r\n")
                if on_line:
                    try:
                        on_line(tool, stream.name, line)
                    except Exception as e:
                        # An observer bug must not stall the pipe
                        logger.error(f"Line observer failed for {tool}: {str(e)}")
                stream.push(line)
        finally:
            pipe.close()
            stream.close()

    @staticmethod
    def _wait(proc: subprocess.Popen, handle: ProcessHandle, readers) -> None:
        try:
            code = proc.wait()
            for reader in readers:
                reader.join()
            exit_status = ProcessExit(code=code, terminated=handle.kill_requested)
            logger.debug(f"{handle.tool} (pid {proc.pid}) finished: {exit_status}")
            handle.exit_future.set_result(exit_status)
        except Exception as e:
            handle.exit_future.set_exception(e)

    @staticmethod
    def _kill_tree(proc: subprocess.Popen, tool: str) -> None:
        """Kill the process and everything it spawned."""
        logger.info(f"Terminating {tool} (pid {proc.pid}) and its child processes")
        if IS_WINDOWS:
            subprocess.run(
                ["taskkill", "/F", "/T", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                creationflags=CREATE_NO_WINDOW,
                check=False
            )
            if proc.poll() is None:
                proc.kill()
            return
        try:
            # start_new_session made the child a group leader
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning(f"Could not kill process group of {tool}: {str(e)}")
            proc.kill()
