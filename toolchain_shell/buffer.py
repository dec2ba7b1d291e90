"""Protected, prompt-prefixed text buffer mirroring the shell's I/O.

The buffer is a plain data structure: the full rendered text plus an absolute
caret offset. Everything before the prompt on the last line is read-only; every
caret move or deletion that would land before ``len(prompt)`` within the last
line is rejected and reported as ``False``.

Rendering surfaces subscribe with :meth:`LineBuffer.subscribe` and redraw on
each :class:`BufferChange`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from loguru import logger

from .settings import DEFAULT_PROMPT

_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class BufferChange:
    kind: str  # "reset" | "output" | "commit" | "input" | "caret"
    text: str = ""
    source: Optional[str] = None


BufferListener = Callable[["LineBuffer", BufferChange], None]


class LineBuffer:
    def __init__(self, prompt: str = DEFAULT_PROMPT, banner: str = "") -> None:
        if not prompt or "\n" in prompt:
            raise ValueError("prompt must be a non-empty single-line string")
        self.prompt = prompt
        self._text = banner + prompt
        self._caret = len(self._text)
        self._listeners: List[BufferListener] = []

    # ------------------------------------------------------------------
    # Views

    @property
    def text(self) -> str:
        return self._text

    @property
    def caret(self) -> int:
        return self._caret

    @property
    def last_line_start(self) -> int:
        return self._text.rfind("\n") + 1

    @property
    def last_line(self) -> str:
        return self._text[self.last_line_start:]

    @property
    def at_prompt(self) -> bool:
        return self.last_line.startswith(self.prompt)

    @property
    def caret_floor(self) -> int:
        """Smallest absolute caret offset an edit may produce."""
        return self.last_line_start + len(self.prompt)

    @property
    def caret_column(self) -> int:
        return self._caret - self.last_line_start

    @property
    def current_input(self) -> str:
        if not self.at_prompt:
            return ""
        return self.last_line[len(self.prompt):]

    def submission(self) -> str:
        """The candidate command: text after the prompt on the last line, trimmed."""
        return self.current_input.strip()

    # ------------------------------------------------------------------
    # Listeners

    def subscribe(self, listener: BufferListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def _notify(self, change: BufferChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, change)
            except Exception:
                logger.opt(exception=True).warning("buffer.listener_failed kind={}", change.kind)

    # ------------------------------------------------------------------
    # Shell-driven mutations

    def reset(self, banner: str = "") -> None:
        self._text = banner + self.prompt
        self._caret = len(self._text)
        self._notify(BufferChange("reset", self._text))

    def append_output(self, text: str, source: str = "stdout") -> None:
        """Append process output, keeping exactly one prompt at the tail.

        A bare trailing prompt is removed first; a fresh one is added when the
        chunk ends with a line terminator.
        """
        if not text:
            return
        if self.last_line == self.prompt:
            self._text = self._text[: -len(self.prompt)]
        self._text += text
        if text.endswith("\n"):
            self._text += self.prompt
        self._caret = len(self._text)
        self._notify(BufferChange("output", text, source))

    def commit_input(self, command: str) -> None:
        """Echo ``command`` as the submitted input line and open a new prompt."""
        if self.at_prompt:
            self._text = self._text[: self.last_line_start] + self.prompt + command
        else:
            lead = "\n" if self.last_line else ""
            self._text += lead + self.prompt + command
        self._text += "\n" + self.prompt
        self._caret = len(self._text)
        self._notify(BufferChange("commit", command))

    def replace_input(self, value: str) -> bool:
        """Swap the input after the prompt. Rejected while no prompt is showing."""
        if not self.at_prompt:
            return False
        self._text = self._text[: self.last_line_start] + self.prompt + value
        self._caret = len(self._text)
        self._notify(BufferChange("input", value))
        return True

    # ------------------------------------------------------------------
    # Guarded user edits

    def _caret_allowed(self, pos: int) -> bool:
        # No prompt on the last line means output is mid-line: nothing is editable.
        return self.at_prompt and self.caret_floor <= pos <= len(self._text)

    def _move(self, pos: int) -> bool:
        if not self._caret_allowed(pos):
            return False
        self._caret = pos
        self._notify(BufferChange("caret"))
        return True

    def move_left(self) -> bool:
        return self._move(self._caret - 1)

    def move_right(self) -> bool:
        return self._move(self._caret + 1)

    def move_home(self) -> bool:
        return self._move(self.caret_floor)

    def move_end(self) -> bool:
        return self._move(len(self._text))

    def set_caret(self, pos: int) -> bool:
        return self._move(pos)

    def insert(self, text: str) -> bool:
        if not text or not self._caret_allowed(self._caret):
            return False
        self._text = self._text[: self._caret] + text + self._text[self._caret:]
        self._caret += len(text)
        self._notify(BufferChange("input", self.current_input))
        return True

    def insert_plain_text(self, text: str) -> bool:
        """Paste/drop path: plain text inserted at the caret, line breaks flattened."""
        return self.insert(_LINE_BREAK_RE.sub(" ", text or ""))

    def backspace(self) -> bool:
        if not self._caret_allowed(self._caret - 1):
            return False
        self._text = self._text[: self._caret - 1] + self._text[self._caret:]
        self._caret -= 1
        self._notify(BufferChange("input", self.current_input))
        return True

    def delete_forward(self) -> bool:
        if not self._caret_allowed(self._caret) or self._caret >= len(self._text):
            return False
        self._text = self._text[: self._caret] + self._text[self._caret + 1:]
        self._notify(BufferChange("input", self.current_input))
        return True

    def delete_range(self, start: int, end: int) -> bool:
        start, end = min(start, end), max(start, end)
        if start == end or not self._caret_allowed(start) or end > len(self._text):
            return False
        self._text = self._text[:start] + self._text[end:]
        self._caret = start
        self._notify(BufferChange("input", self.current_input))
        return True
