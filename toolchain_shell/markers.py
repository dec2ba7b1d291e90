"""Hidden sentinel lines used to observe shell readiness and command completion.

The session writes ``echo "__TCS_READY__ <token>"`` (or a ``__TCS_DONE__``
line carrying the exit status) after a command. The shell prints the line on
stdout; :class:`MarkerFilter` removes it from the visible stream and reports
it to the session instead.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

MARKER_PREFIX = "__TCS_"
MIN_HELD_PREFIX = 2
READY = "READY"
DONE = "DONE"

_MARKER_RE = re.compile(r"__TCS_(READY|DONE)__ (\S+)(?: (\S*))?\s*$")
_LINE_RE = re.compile(r"[^\r\n]*(?:\r\n|\n|\r)|[^\r\n]+")


@dataclass(frozen=True)
class Marker:
    kind: str
    token: str
    status: Optional[int] = None


def marker_text(kind: str, token: str, status_expr: Optional[str] = None) -> str:
    text = f"{MARKER_PREFIX}{kind}__ {token}"
    if status_expr:
        text = f"{text} {status_expr}"
    return text


def _parse_status(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _partial_prefix_start(piece: str) -> int:
    """Index where a trailing fragment of MARKER_PREFIX begins, or -1.

    A lone trailing underscore is not held; at least "__" must match.
    """
    for k in range(min(len(piece), len(MARKER_PREFIX) - 1), MIN_HELD_PREFIX - 1, -1):
        if piece.endswith(MARKER_PREFIX[:k]):
            return len(piece) - k
    return -1


class MarkerFilter:
    """Per-stream filter that strips marker lines from decoded output."""

    def __init__(self) -> None:
        self._pending = ""
        self._swallow_lf = False

    def feed(self, text: str) -> Tuple[str, List[Marker]]:
        data = self._pending + text
        self._pending = ""
        if self._swallow_lf and data.startswith("\n"):
            data = data[1:]
        self._swallow_lf = False

        visible: List[str] = []
        markers: List[Marker] = []
        for piece in _LINE_RE.findall(data):
            if piece.endswith(("\n", "\r")):
                body = piece.rstrip("\r\n")
                idx = body.find(MARKER_PREFIX)
                match = _MARKER_RE.match(body, idx) if idx >= 0 else None
                if match:
                    visible.append(body[:idx])
                    markers.append(Marker(match.group(1), match.group(2), _parse_status(match.group(3))))
                    # CRLF split across two reads
                    self._swallow_lf = piece.endswith("\r")
                    continue
                visible.append(piece)
                continue

            idx = piece.find(MARKER_PREFIX)
            if idx < 0:
                idx = _partial_prefix_start(piece)
            if idx >= 0:
                visible.append(piece[:idx])
                self._pending = piece[idx:]
            else:
                visible.append(piece)

        return "".join(visible), markers

    def flush(self) -> str:
        """Release anything held back (used once the stream hit EOF)."""
        pending, self._pending = self._pending, ""
        return pending
