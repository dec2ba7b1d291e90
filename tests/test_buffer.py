from __future__ import annotations

import pytest

from toolchain_shell.buffer import BufferChange, LineBuffer


def test_new_buffer_ends_with_prompt() -> None:
    buf = LineBuffer()
    assert buf.text == "PS> "
    assert buf.caret == 4
    assert buf.at_prompt


def test_prompt_must_be_single_line() -> None:
    with pytest.raises(ValueError):
        LineBuffer(prompt="a\nb")


def test_append_output_replaces_bare_prompt_and_adds_fresh_one() -> None:
    buf = LineBuffer()
    buf.append_output("hello\n")
    assert buf.text == "hello\nPS> "
    assert buf.caret == len(buf.text)


def test_append_output_without_newline_leaves_partial_line() -> None:
    buf = LineBuffer()
    buf.append_output("Compiling...")
    assert buf.text == "Compiling..."
    assert not buf.at_prompt

    buf.append_output(" done\n")
    assert buf.text == "Compiling... done\nPS> "


def test_append_output_keeps_typed_input() -> None:
    buf = LineBuffer()
    buf.insert("ls")
    buf.append_output("late output\n")
    assert buf.text == "PS> lslate output\nPS> "


def test_commit_input_echoes_command_and_opens_prompt() -> None:
    buf = LineBuffer()
    buf.insert("dir")
    buf.commit_input("dir")
    assert buf.text == "PS> dir\nPS> "
    assert buf.current_input == ""


def test_commit_input_after_partial_output_starts_new_line() -> None:
    buf = LineBuffer()
    buf.append_output("progress")
    buf.commit_input("next")
    assert buf.text == "progress\nPS> next\nPS> "


def test_replace_input_keeps_partial_output() -> None:
    buf = LineBuffer()
    buf.append_output("Enter name: ")
    assert buf.replace_input("ls") is False
    assert buf.text == "Enter name: "

    buf.append_output("\n")
    assert buf.replace_input("ls") is True
    assert buf.text == "Enter name: \nPS> ls"


def test_submission_is_trimmed() -> None:
    buf = LineBuffer()
    buf.insert("  make all  ")
    assert buf.submission() == "make all"


def test_caret_cannot_enter_prompt() -> None:
    buf = LineBuffer()
    buf.append_output("output line\n")
    assert buf.move_left() is False
    assert buf.backspace() is False
    assert buf.move_home() is True
    assert buf.caret == buf.caret_floor
    assert buf.set_caret(0) is False
    assert buf.text.endswith("PS> ")


def test_backspace_and_delete_within_input() -> None:
    buf = LineBuffer()
    buf.insert("abc")
    assert buf.backspace() is True
    assert buf.current_input == "ab"
    assert buf.move_home() is True
    assert buf.delete_forward() is True
    assert buf.current_input == "b"
    assert buf.backspace() is False
    assert buf.move_end() is True
    assert buf.delete_forward() is False


def test_delete_range_rejected_when_it_reaches_prompt() -> None:
    buf = LineBuffer()
    buf.insert("hello")
    floor = buf.caret_floor
    assert buf.delete_range(floor - 2, floor + 2) is False
    assert buf.delete_range(floor, floor + 2) is True
    assert buf.current_input == "llo"
    assert buf.caret == floor


def test_insert_at_caret_in_middle() -> None:
    buf = LineBuffer()
    buf.insert("ac")
    buf.move_left()
    buf.insert("b")
    assert buf.current_input == "abc"
    assert buf.caret_column == len("PS> ab")


def test_paste_flattens_line_breaks() -> None:
    buf = LineBuffer()
    assert buf.insert_plain_text("echo a\r\necho b\n") is True
    assert buf.current_input == "echo a echo b "
    assert "\n" not in buf.last_line


def test_insert_rejected_when_caret_not_at_prompt_line() -> None:
    buf = LineBuffer()
    buf.append_output("no newline yet")
    assert buf.insert("x") is False


def test_replace_input_rewrites_last_line() -> None:
    buf = LineBuffer()
    buf.insert("draft")
    buf.replace_input("history entry")
    assert buf.text == "PS> history entry"
    assert buf.caret == len(buf.text)


def test_listeners_receive_changes_and_failures_are_isolated() -> None:
    buf = LineBuffer()
    seen: list[BufferChange] = []

    def broken(_buf: LineBuffer, _change: BufferChange) -> None:
        raise RuntimeError("render failed")

    buf.subscribe(broken)
    unsubscribe = buf.subscribe(lambda _b, change: seen.append(change))
    buf.append_output("err\n", source="stderr")
    assert seen[-1] == BufferChange("output", "err\n", "stderr")

    unsubscribe()
    buf.append_output("more\n")
    assert len(seen) == 1


def test_reset_uses_banner() -> None:
    buf = LineBuffer()
    buf.insert("junk")
    buf.reset("bash session started\n\n")
    assert buf.text == "bash session started\n\nPS> "
