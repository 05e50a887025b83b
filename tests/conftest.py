from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from pgclone.core.config import CloneConfig, Config, StorageConfig
from pgclone.core.exceptions import ToolNotFound
from pgclone.domain.interfaces import ProcessRunnerInterface
from pgclone.domain.models import ConnectionProfile, ToolPaths
from pgclone.domain.process import LineStream, ProcessExit, ProcessHandle
from pgclone.infrastructure.storage import JSONAppStore
from pgclone.services.catalog import FIELD_SEPARATOR


@dataclass
class Script:
    """Scripted behavior of one fake tool invocation."""
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)
    exit_code: int = 0
    hang: bool = False  # Stay running until killed
    file_content: Optional[str] = "-- dump\n"  # Written to the --file= target
    action: Optional[Callable[[], None]] = None  # Runs when the process starts


@dataclass
class Call:
    executable: str
    args: List[str]
    env: dict
    tool: str

    @property
    def command_line(self) -> str:
        return " ".join(self.args)


class ScriptedProcessRunner(ProcessRunnerInterface):
    """Process runner double that plays back scripted tool output."""

    def __init__(self):
        self.calls: List[Call] = []
        self.rules = []
        self.missing = set()
        self.handles: List[ProcessHandle] = []

    def on(self, tool: str, *fragments: str, **script) -> Script:
        """Script the first call of ``tool`` whose arguments contain all fragments."""
        scripted = Script(**script)
        self.rules.append((tool, fragments, scripted))
        return scripted

    def _match(self, tool: str, args: List[str]) -> Script:
        command_line = " ".join(args)
        for rule_tool, fragments, scripted in self.rules:
            if rule_tool == tool and all(f in command_line for f in fragments):
                return scripted
        return Script()

    def calls_of(self, tool: str) -> List[Call]:
        return [c for c in self.calls if c.tool == tool]

    @property
    def tools_called(self) -> List[str]:
        return [c.tool for c in self.calls]

    def start(self, executable, args, env=None, cwd=None, on_line=None, tool=None):
        tool = tool or Path(executable).stem
        self.calls.append(Call(executable, list(args), dict(env or {}), tool))
        if executable in self.missing:
            raise ToolNotFound(tool, executable)

        scripted = self._match(tool, list(args))
        for arg in args:
            if arg.startswith("--file=") and scripted.file_content is not None:
                Path(arg[len("--file="):]).write_text(scripted.file_content, encoding="utf-8")
        if scripted.action:
            scripted.action()

        stdout = LineStream("stdout")
        stderr = LineStream("stderr")
        for stream, lines in ((stdout, scripted.stdout), (stderr, scripted.stderr)):
            for line in lines:
                if on_line:
                    on_line(tool, stream.name, line)
                stream.push(line)

        exit_future: "Future[ProcessExit]" = Future()

        def killer():
            stdout.close()
            stderr.close()
            if not exit_future.done():
                exit_future.set_result(ProcessExit(code=-9, terminated=True))

        handle = ProcessHandle(tool, stdout, stderr, exit_future, killer=killer, pid=1000 + len(self.calls))
        if not scripted.hang:
            stdout.close()
            stderr.close()
            exit_future.set_result(ProcessExit(code=scripted.exit_code))
        self.handles.append(handle)
        return handle


class FakeClock:
    """Clock advancing one second per reading."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


def catalog_rows(*rows) -> List[str]:
    """psql -A -t output lines for the given rows."""
    return [FIELD_SEPARATOR.join(str(value) for value in row) for row in rows]


@pytest.fixture()
def runner():
    return ScriptedProcessRunner()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def tools():
    return ToolPaths(psql="/usr/bin/psql", pg_dump="/usr/bin/pg_dump", pg_restore="/usr/bin/pg_restore")


@pytest.fixture()
def config(tmp_path):
    return Config(
        clone=CloneConfig(
            parallel_jobs=2,
            backup_dir=str(tmp_path / "backups"),
            temp_dir=str(tmp_path / "tmp"),
        ),
        storage=StorageConfig(data_dir=str(tmp_path / "data")),
    )


@pytest.fixture()
def source_profile():
    return ConnectionProfile(
        id="src", name="Production", host="db.example.com", port=5432,
        database="shop", user="reader", password="s3cret"
    )


@pytest.fixture()
def destination_profile():
    return ConnectionProfile(
        id="dst", name="Staging", host="localhost", port=5433,
        database="shop_staging", user="postgres", password="pw", ssl=True
    )


@pytest.fixture()
def store(config, source_profile, destination_profile):
    store = JSONAppStore(config.data_dir)
    store.save_profile(source_profile)
    store.save_profile(destination_profile)
    return store
