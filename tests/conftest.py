from __future__ import annotations

import asyncio
import itertools
import re
import signal
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable

import pytest

from toolchain_shell.settings import ReadinessPolicy, ShellProfile, ToolchainSettings

# Far above any real pid_max so a stray signal can never reach a real process.
_PIDS = itertools.count(9_000_000)
_ECHO_MARKER_RE = re.compile(r'echo "(__TCS_(?:READY|DONE)__ [^"]*)"')


class FakeStdin:
    def __init__(self, process: "FakeShellProcess") -> None:
        self._process = process
        self._closing = False
        self.lines: list[str] = []

    def write(self, data: bytes) -> None:
        text = data.decode("utf-8")
        for line in text.split("\n"):
            if line:
                self.lines.append(line)
                self._process.handle_line(line)

    async def drain(self) -> None:
        if self._closing:
            raise BrokenPipeError("stdin closed")

    def close(self) -> None:
        self._closing = True

    def is_closing(self) -> bool:
        return self._closing


class FakeShellProcess:
    """Line-oriented stand-in for a shell child process.

    Hidden ``echo "__TCS_..."`` marker commands are answered on stdout the way
    a POSIX shell would answer them, with ``$?`` taken from ``statuses``.
    """

    def __init__(self) -> None:
        self.pid = next(_PIDS)
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.stdin = FakeStdin(self)
        self.signals: list[int] = []
        self.auto_markers = True
        self.outputs: dict[str, str] = {}
        self.statuses: dict[str, int] = {}
        self._exited = asyncio.Event()

    def status_for(self, command: str) -> int:
        for needle, status in self.statuses.items():
            if needle in command:
                return status
        return 0

    def handle_line(self, line: str) -> None:
        match = _ECHO_MARKER_RE.search(line)
        command = line[: match.start()].rstrip().rstrip(";").strip() if match else line.strip()
        if command in self.outputs:
            self.emit(self.outputs[command])
        if match and self.auto_markers:
            marker = match.group(1).replace("$?", str(self.status_for(command)))
            self.emit(marker + "\n")

    def emit(self, text: str, source: str = "stdout") -> None:
        stream = self.stdout if source == "stdout" else self.stderr
        stream.feed_data(text.encode("utf-8"))

    def exit(self, code: int = 0, *, close_streams: bool = True) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        if close_streams:
            self.stdout.feed_eof()
            self.stderr.feed_eof()
        self._exited.set()

    def send_signal(self, sig: int) -> None:
        if self.returncode is not None:
            raise ProcessLookupError(self.pid)
        self.signals.append(sig)
        if sig in (signal.SIGTERM, getattr(signal, "SIGKILL", signal.SIGTERM)):
            self.exit(-int(sig))

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


class FakeSpawner:
    def __init__(self) -> None:
        self.processes: list[FakeShellProcess] = []
        self.calls: list[dict[str, Any]] = []
        self.fail: Exception | None = None

    async def __call__(self, argv: list[str], *, cwd: str, env: dict[str, str], start_new_session: bool) -> FakeShellProcess:
        self.calls.append({"argv": argv, "cwd": cwd, "start_new_session": start_new_session})
        if self.fail is not None:
            raise self.fail
        proc = FakeShellProcess()
        self.processes.append(proc)
        return proc

    @property
    def last(self) -> FakeShellProcess:
        return self.processes[-1]


class FakeLauncher:
    def __init__(self) -> None:
        self.launched: list[list[str]] = []

    async def __call__(self, argv: list[str]) -> Any:
        self.launched.append(list(argv))
        return SimpleNamespace(pid=next(_PIDS))


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def profile() -> ShellProfile:
    return ShellProfile(command=["fake-sh"], process_group=False)


@pytest.fixture
def fast_readiness() -> ReadinessPolicy:
    return ReadinessPolicy(mode="delay", settle_delay=0.0)


@pytest.fixture
def tools(tmp_path: Path) -> dict[str, Path]:
    tool_dir = tmp_path / "tools"
    tool_dir.mkdir()
    paths = {}
    for name in ("compiler.js", "assembler.js", "serialport.exe"):
        path = tool_dir / name
        path.write_text("// tool\n", encoding="utf-8")
        paths[name.split(".")[0]] = path
    return paths


@pytest.fixture
def settings(tools: dict[str, Path], profile: ShellProfile, fast_readiness: ReadinessPolicy) -> ToolchainSettings:
    return ToolchainSettings(
        compiler_path=str(tools["compiler"]),
        assembler_path=str(tools["assembler"]),
        programmer_path=str(tools["serialport"]),
        readiness=fast_readiness,
        shell=profile,
    )
