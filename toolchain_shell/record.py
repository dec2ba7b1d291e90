from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Any, Optional


class SessionState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


@dataclass
class SessionRecord:
    """Serializable metadata describing the interactive shell session."""

    id: str
    command: List[str]
    cwd: str
    state: SessionState = SessionState.STOPPED
    pid: Optional[int] = None
    created_at: float = 0.0
    updated_at: float = 0.0
    started_at: Optional[float] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    starts: int = 0
    ready: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return self.state.value

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "command": list(self.command),
            "cwd": self.cwd,
            "status": self.status,
            "pid": self.pid,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "exit_code": self.exit_code,
            "error": self.error,
            "starts": self.starts,
            "ready": self.ready,
            **self.extra,
        }
