from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from .record import SessionRecord


MaybeAwaitable = Any


@dataclass(frozen=True)
class SessionLifecycleHooks:
    """Optional callbacks for integrating a ShellSession with a host window.

    Callbacks may be sync or async; failures are logged and never reach the
    session (best-effort).
    """

    # Called after the shell process is confirmed running.
    on_session_running: Optional[Callable[[SessionRecord], MaybeAwaitable]] = None

    # Called once the readiness wait finished.
    on_session_ready: Optional[Callable[[SessionRecord], MaybeAwaitable]] = None

    # Called when the session is marked exited.
    # `last_pid` is the PID that was previously associated with the session.
    on_session_exited: Optional[Callable[[SessionRecord, Optional[int]], MaybeAwaitable]] = None
