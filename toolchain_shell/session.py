from __future__ import annotations

import asyncio
import codecs
import contextlib
import inspect
import os
import signal
import time
import uuid
from asyncio import Queue as AsyncQueue
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple

import aiofiles
import psutil
from loguru import logger

from .errors import DispatchOnStoppedSessionError, ProcessExitedError, ProcessSpawnError
from .events import EventBus, EventType, SessionEvent
from .hooks import SessionLifecycleHooks
from .markers import DONE, READY, Marker, marker_text
from .pipe import PipeState
from .record import SessionRecord, SessionState
from .settings import ReadinessPolicy, ShellProfile, default_shell_profile
from .store import RuntimeStore

READ_CHUNK = 4096
EXIT_DRAIN_TIMEOUT = 0.5
EXIT_POLL_INTERVAL = 0.1
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


class OutputSink(Protocol):
    def append_output(self, text: str, source: str = "stdout") -> None: ...

    def commit_input(self, command: str) -> None: ...

    def reset(self, banner: str = "") -> None: ...


class DispatchStatus(Enum):
    DISPATCHED = "dispatched"
    COMPLETED = "completed"


def _retrieve_exception(fut: asyncio.Future) -> None:
    if not fut.cancelled():
        fut.exception()


@dataclass
class Dispatch:
    """Result of handing one command line to the shell.

    ``status`` is DISPATCHED as soon as the bytes are written. Only dispatches
    issued with ``track_completion=True`` can ever become COMPLETED.
    """

    seq: int
    command: str
    dispatched_at: float = field(default_factory=time.time)
    completion: Optional[asyncio.Future] = None

    @property
    def tracked(self) -> bool:
        return self.completion is not None

    @property
    def status(self) -> DispatchStatus:
        fut = self.completion
        if fut is not None and fut.done() and not fut.cancelled() and fut.exception() is None:
            return DispatchStatus.COMPLETED
        return DispatchStatus.DISPATCHED

    async def wait_completed(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for the exit status reported by the shell (None when unknown)."""
        if self.completion is None:
            raise RuntimeError("dispatch was issued without completion tracking")
        return await asyncio.wait_for(asyncio.shield(self.completion), timeout)


Spawner = Callable[..., Awaitable[Any]]


def _descendants(pid: Optional[int]) -> Optional[List[psutil.Process]]:
    """Children of the shell, or None when psutil cannot see the process."""
    if not pid:
        return None
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied, ValueError, TypeError):
        return None


def _interrupt_processes(children: List[psutil.Process]) -> int:
    # Only the tools the shell started; the shell itself keeps running.
    count = 0
    for child in children:
        try:
            if os.name == "nt":
                child.terminate()
            else:
                child.send_signal(signal.SIGINT)
            count += 1
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return count


async def spawn_shell_process(argv: List[str], *, cwd: str, env: Dict[str, str], start_new_session: bool) -> Any:
    return await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        env=env,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=start_new_session,
    )


class ShellSession:
    """Owns one interactive shell process and its byte streams.

    Output from stdout and stderr is decoded, stripped of hidden marker lines
    and appended to the sink (normally a LineBuffer). Commands are written to
    stdin strictly in call order; a dispatch resolves once written, not when
    the command finishes.
    """

    def __init__(
        self,
        *,
        profile: Optional[ShellProfile] = None,
        sink: Optional[OutputSink] = None,
        bus: Optional[EventBus] = None,
        readiness: Optional[ReadinessPolicy] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        hooks: Optional[SessionLifecycleHooks] = None,
        store: Optional[RuntimeStore] = None,
        spawner: Optional[Spawner] = None,
    ) -> None:
        self.profile = profile or default_shell_profile()
        self.sink = sink
        self.bus = bus or EventBus()
        self.readiness = readiness or ReadinessPolicy()
        self.store = store
        self._hooks = hooks
        self._spawner = spawner or spawn_shell_process
        self._env_overrides = dict(env or {})

        now = time.time()
        self.record = SessionRecord(
            id=f"ts_{int(now)}_{uuid.uuid4().hex[:8]}",
            command=list(self.profile.command),
            cwd=str(Path(cwd or os.getcwd()).resolve()),
            created_at=now,
            updated_at=now,
        )
        self._pipe: Optional[PipeState] = None
        self._generation = 0
        self._seq = 0
        self._subscribers: List[AsyncQueue[Tuple[str, str]]] = []
        self._hook_tasks: Set[asyncio.Future] = set()

    # ------------------------------------------------------------------
    # State

    @property
    def state(self) -> SessionState:
        return self.record.state

    def is_running(self) -> bool:
        return self.record.state is SessionState.RUNNING and self._pipe is not None

    @property
    def pid(self) -> Optional[int]:
        return self._pipe.pid if self._pipe else None

    def _set_state(self, state: SessionState) -> None:
        self.record.state = state
        self.record.updated_at = time.time()

    def _get_lock(self) -> asyncio.Lock:
        if not hasattr(self, "_lock_instance"):
            self._lock_instance = asyncio.Lock()
        return self._lock_instance

    async def _emit(self, event_type: EventType, **extra: Any) -> None:
        event = SessionEvent(
            type=event_type,
            session_id=self.record.id,
            data={**self.record.to_payload(), **extra},
        )
        await self.bus.publish(event)

    # ------------------------------------------------------------------
    # Hooks

    def _fire_hook(self, name: str, *args: Any) -> None:
        """Best-effort hook execution; never blocks core flow."""
        hook = getattr(self._hooks, name, None) if self._hooks else None
        if not hook:
            return
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._hook_tasks.add(task)
                task.add_done_callback(lambda t: self._hook_done(name, t))
        except Exception:
            logger.opt(exception=True).warning("session.hook_failed hook={}", name)

    def _hook_done(self, name: str, task: asyncio.Future) -> None:
        self._hook_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).warning("session.hook_failed hook={}", name)

    # ------------------------------------------------------------------
    # Lifecycle

    def _prepare_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self._env_overrides)
        return env

    def _banner(self) -> str:
        return f"{self.profile.name} session started\nWorking directory: {self.record.cwd}\n\n"

    def _sink_output(self, text: str, source: str) -> None:
        if self.sink is not None:
            self.sink.append_output(text, source)

    async def start(self) -> SessionRecord:
        """(Re)start the shell. An existing process is killed first."""
        async with self._get_lock():
            if self._pipe is not None:
                logger.info("session.restart pid={}", self._pipe.pid)
                self._discard_pipe(self._pipe)

            self._set_state(SessionState.STARTING)
            self.record.pid = None
            self.record.exit_code = None
            self.record.error = None
            self.record.ready = False
            await self._emit(EventType.SESSION_STARTING)

            try:
                proc = await self._spawner(
                    list(self.profile.command),
                    cwd=self.record.cwd,
                    env=self._prepare_env(),
                    start_new_session=self.profile.process_group,
                )
            except (OSError, ValueError) as exc:
                self._set_state(SessionState.EXITED)
                self.record.error = str(exc)
                logger.error("session.spawn_failed command={} error={}", self.profile.command, exc)
                self._sink_output(f"\n[failed to start {self.profile.name}: {exc}]\n", "error")
                await self._emit(EventType.SESSION_ERROR, message=str(exc))
                raise ProcessSpawnError(f"failed to start {self.profile.name}: {exc}") from exc

            self._generation += 1
            state = PipeState(process=proc, generation=self._generation)
            self._pipe = state
            self.record.pid = proc.pid
            self.record.started_at = time.time()
            self.record.starts += 1
            self._set_state(SessionState.RUNNING)
            if self.sink is not None:
                self.sink.reset(self._banner())

            for source in ("stdout", "stderr"):
                stream = getattr(proc, source, None)
                if stream is not None:
                    state.readers.append(asyncio.create_task(self._read_stream(state, stream, source)))
            state.watcher = asyncio.create_task(self._watch_exit(state))

            logger.info("session.start pid={} command={} cwd={}", proc.pid, self.profile.command, self.record.cwd)
            await self._emit(EventType.SESSION_RUNNING)
            self._fire_hook("on_session_running", self.record)
            return self.record

    async def stop(self) -> None:
        """Ask the shell to terminate. Does not wait for it; no-op unless running."""
        async with self._get_lock():
            if self.record.state not in (SessionState.RUNNING, SessionState.STARTING):
                return
            self._set_state(SessionState.EXITED)
            self.record.ready = False
            state = self._pipe
            if state is None:
                return
            logger.info("session.stop pid={}", state.pid)
            self._signal(state, signal.SIGTERM)
            self._close_stdin(state)

    async def close(self, timeout: float = 2.0) -> None:
        """Stop the session and wait (bounded) for the process to be reaped."""
        state = self._pipe
        await self.stop()
        if state is None or state.watcher is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(state.watcher), timeout)
        except asyncio.TimeoutError:
            logger.warning("session.close.kill pid={}", state.pid)
            self._signal(state, _SIGKILL)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(asyncio.shield(state.watcher), timeout)

    async def ensure_running(self) -> bool:
        """Start the shell and wait for readiness unless it already runs. True if started."""
        if self.is_running():
            return False
        await self.start()
        await self.wait_ready()
        return True

    async def wait_ready(self) -> bool:
        """Wait until the shell can take input.

        ``delay`` mode sleeps for the settle delay. ``marker`` mode echoes a
        hidden marker and waits for it, falling back to "assume ready" on
        timeout. Returns True only when readiness was actually observed.
        """
        state = self._pipe
        if state is None or not self.is_running():
            raise DispatchOnStoppedSessionError(f"session is {self.record.status}")

        policy = self.readiness
        observed = False
        if policy.mode == "marker" and self.profile.echo_template:
            self._seq += 1
            token = f"{state.generation}.r{self._seq}"
            fut = asyncio.get_running_loop().create_future()
            fut.add_done_callback(_retrieve_exception)
            state.pending[token] = fut
            self._write(state, self.profile.echo_line(marker_text(READY, token)))
            try:
                await asyncio.wait_for(fut, timeout=policy.timeout)
                observed = True
            except asyncio.TimeoutError:
                state.pending.pop(token, None)
                logger.warning("session.ready.timeout timeout={} fallback=assume-ready", policy.timeout)
        else:
            await asyncio.sleep(policy.settle_delay)

        if self._pipe is state and self.is_running():
            self.record.ready = True
            await self._emit(EventType.SESSION_READY, observed=observed)
            self._fire_hook("on_session_ready", self.record)
        return observed

    def _discard_pipe(self, state: PipeState) -> None:
        """Kill a process handle that is being replaced; its exit is ignored."""
        state.stop.set()
        self._pipe = None
        self._signal(state, _SIGKILL)
        self._close_stdin(state)
        for reader in state.readers:
            reader.cancel()
        self._fail_pending(state, None)

    def _close_stdin(self, state: PipeState) -> None:
        stdin = getattr(state.process, "stdin", None)
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    def _fail_pending(self, state: PipeState, exit_code: Optional[int]) -> None:
        pending, state.pending = state.pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(ProcessExitedError(exit_code))

    def _signal(self, state: PipeState, sig: int) -> None:
        proc = state.process
        if getattr(proc, "returncode", None) is not None:
            return
        if self.profile.process_group and hasattr(os, "killpg") and state.pid:
            try:
                os.killpg(os.getpgid(state.pid), sig)
                return
            except ProcessLookupError:
                return
            except OSError:
                pass
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass

    async def _reap(self, state: PipeState) -> int:
        """Exit code of the shell, without waiting for its pipes to close."""
        waiter = asyncio.ensure_future(state.process.wait())
        try:
            while True:
                done, _ = await asyncio.wait({waiter}, timeout=EXIT_POLL_INTERVAL)
                if done:
                    return waiter.result()
                # Process.wait() may hold until every pipe is closed.
                code = getattr(state.process, "returncode", None)
                if code is not None:
                    return code
        finally:
            if not waiter.done():
                waiter.cancel()

    async def _watch_exit(self, state: PipeState) -> None:
        code = await self._reap(state)
        if self._pipe is not state:
            logger.debug("session.exit.stale pid={} code={}", state.pid, code)
            return

        self._pipe = None
        last_pid = self.record.pid
        self.record.pid = None
        self.record.exit_code = code
        self.record.ready = False
        self._set_state(SessionState.EXITED)
        self._fail_pending(state, code)

        # Background children of the shell can hold the pipes open after it exits.
        if state.readers:
            _, lingering = await asyncio.wait(state.readers, timeout=EXIT_DRAIN_TIMEOUT)
            if lingering:
                logger.debug("session.exit.readers_cancelled pid={} count={}", last_pid, len(lingering))
                state.stop.set()
                for reader in lingering:
                    reader.cancel()

        if self._pipe is None:
            self._sink_output(f"\n[process exited with code {code}]\n", "system")
        logger.info("session.exit pid={} code={}", last_pid, code)
        await self._emit(EventType.SESSION_EXITED, exit_code=code)
        self._fire_hook("on_session_exited", self.record, last_pid)

    # ------------------------------------------------------------------
    # Output

    async def _read_stream(self, state: PipeState, stream: Any, source: str) -> None:
        decoder = codecs.getincrementaldecoder(self.profile.encoding)(errors="replace")
        async with contextlib.AsyncExitStack() as stack:
            log_fh = None
            if self.store is not None:
                log_fh = await stack.enter_async_context(
                    aiofiles.open(self.store.transcript_path(self.record.id, source), "ab")
                )
            while not state.stop.is_set():
                try:
                    data = await stream.read(READ_CHUNK)
                except OSError as exc:
                    logger.warning("session.read_failed source={} error={}", source, exc)
                    break
                if not data or state.stop.is_set():
                    break
                await self._on_data(state, source, decoder.decode(data))
                if log_fh is not None:
                    await log_fh.write(data)
                    await log_fh.flush()

            if not state.stop.is_set():
                tail = decoder.decode(b"", final=True) + state.filter_for(source).flush()
                if tail and self._pipe in (None, state):
                    await self._deliver(source, tail)

    async def _on_data(self, state: PipeState, source: str, text: str) -> None:
        if not text:
            return
        if self._pipe is not None and self._pipe is not state:
            return
        visible, markers = state.filter_for(source).feed(text)
        for marker in markers:
            self._resolve_marker(state, marker)
        if visible:
            await self._deliver(source, visible)

    async def _deliver(self, source: str, text: str) -> None:
        self._sink_output(text, source)
        for q in list(self._subscribers):
            q.put_nowait((text, source))
        await self.bus.publish(
            SessionEvent(type=EventType.OUTPUT_CHUNK, session_id=self.record.id, data={"text": text, "source": source})
        )

    def _resolve_marker(self, state: PipeState, marker: Marker) -> None:
        fut = state.pending.pop(marker.token, None)
        if fut is None or fut.done():
            logger.debug("session.marker.unmatched kind={} token={}", marker.kind, marker.token)
            return
        fut.set_result(marker.status if marker.kind == DONE else True)

    def subscribe_output(self) -> AsyncQueue[Tuple[str, str]]:
        """Subscribe to visible output as ``(text, source)`` tuples."""
        q: AsyncQueue[Tuple[str, str]] = AsyncQueue()
        self._subscribers.append(q)
        return q

    def unsubscribe_output(self, q: AsyncQueue[Tuple[str, str]]) -> None:
        try:
            self._subscribers.remove(q)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Input

    def _write(self, state: PipeState, line: str) -> None:
        state.process.stdin.write((line + self.profile.line_terminator).encode(self.profile.encoding))

    async def dispatch(self, command: str, *, track_completion: bool = False) -> Dispatch:
        """Echo ``command`` into the buffer and write it to the shell's stdin.

        Returns as soon as the line has been handed to the pipe. With
        ``track_completion`` an exit-status marker is appended so that
        ``Dispatch.wait_completed()`` can observe the end of the command.
        """
        state = self._pipe
        if state is None or not self.is_running():
            raise DispatchOnStoppedSessionError(f"session is {self.record.status}; start it before dispatching")
        stdin = getattr(state.process, "stdin", None)
        if stdin is None or stdin.is_closing():
            raise DispatchOnStoppedSessionError("shell stdin is closed")

        self._seq += 1
        dispatch = Dispatch(seq=self._seq, command=command)
        line = command
        if track_completion and command.strip() and self.profile.echo_template:
            token = f"{state.generation}.{self._seq}"
            fut = asyncio.get_running_loop().create_future()
            fut.add_done_callback(_retrieve_exception)
            state.pending[token] = fut
            dispatch.completion = fut
            marker = marker_text(DONE, token, self.profile.exit_status_expr)
            line = f"{command}{self.profile.separator}{self.profile.echo_line(marker)}"

        if self.sink is not None:
            self.sink.commit_input(command)
        self._write(state, line)
        logger.debug("session.dispatch seq={} command={}", dispatch.seq, command)
        await self._emit(EventType.COMMAND_DISPATCHED, command=command, seq=dispatch.seq)
        try:
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise DispatchOnStoppedSessionError("shell stdin closed during dispatch") from exc
        return dispatch

    async def interrupt(self) -> bool:
        """Interrupt whatever the shell is running without ending the session."""
        state = self._pipe
        if state is None or not self.is_running():
            return False
        children = await asyncio.to_thread(_descendants, state.pid)
        if children is None:
            self._signal(state, signal.SIGINT)
            signalled = 1
        else:
            signalled = _interrupt_processes(children)
        self._sink_output("^C\n", "system")
        logger.info("session.interrupt pid={} signalled={}", state.pid, signalled)
        await self._emit(EventType.SESSION_INTERRUPTED, signalled=signalled)
        return True

    # ------------------------------------------------------------------
    # Describe / stats

    async def describe(self) -> Dict[str, Any]:
        """Return the record payload plus best-effort process stats."""
        payload = self.record.to_payload()
        payload["stats"] = await asyncio.to_thread(self._process_stats)
        return payload

    def _process_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"alive": False, "uptime": None}
        pid = self.pid
        if not pid:
            return stats
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                stats["alive"] = proc.is_running()
                stats["cpu_percent"] = proc.cpu_percent(interval=0.0)
                stats["memory_rss"] = proc.memory_info().rss
                children = proc.children(recursive=True)
            stats["children"] = len(children)
            stats["busy"] = bool(children)
        except (psutil.NoSuchProcess, psutil.AccessDenied, ValueError):
            return stats
        if self.record.started_at:
            stats["uptime"] = max(0.0, time.time() - self.record.started_at)
        return stats
