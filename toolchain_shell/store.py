from pathlib import Path
from typing import Optional
import os
import hashlib


def _compute_fingerprint_from_cwd() -> str:
    cwd = Path.cwd().resolve()
    return hashlib.sha256(str(cwd).encode("utf-8")).hexdigest()[:16]

def _default_base_dir() -> Path:
    return Path.home() / ".cache" / "toolchain_shell"


class RuntimeStore:
    """Namespaced storage paths for session transcripts."""
    
    def __init__(self, base_dir: Optional[Path] = None):
        base = (
            base_dir
            or (Path(os.path.expanduser(os.environ["TOOLCHAIN_SHELL_BASE_DIR"])).resolve() if os.environ.get("TOOLCHAIN_SHELL_BASE_DIR") else None)
            or _default_base_dir()
        )
        fingerprint = os.environ.get("TOOLCHAIN_SHELL_FINGERPRINT") or _compute_fingerprint_from_cwd()

        self.root = Path(base) / "runtimes" / fingerprint
        self.logs_dir = self.root / "logs"
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def transcript_path(self, session_id: str, source: str) -> Path:
        return self.logs_dir / f"{session_id}.{source}.log"
