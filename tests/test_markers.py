from __future__ import annotations

from toolchain_shell.markers import DONE, READY, Marker, MarkerFilter, marker_text


def test_marker_text() -> None:
    assert marker_text(READY, "1.r1") == "__TCS_READY__ 1.r1"
    assert marker_text(DONE, "1.2", "$?") == "__TCS_DONE__ 1.2 $?"


def test_complete_marker_line_is_hidden() -> None:
    flt = MarkerFilter()
    visible, markers = flt.feed("build ok\n__TCS_DONE__ 1.2 0\nnext\n")
    assert visible == "build ok\nnext\n"
    assert markers == [Marker(DONE, "1.2", 0)]


def test_marker_split_across_reads_is_held_back() -> None:
    flt = MarkerFilter()
    visible, markers = flt.feed("out\n__TC")
    assert visible == "out\n"
    assert markers == []

    visible, markers = flt.feed("S_READY__ 3.r1\n")
    assert visible == ""
    assert markers == [Marker(READY, "3.r1", None)]


def test_text_before_marker_on_same_line_is_kept() -> None:
    flt = MarkerFilter()
    visible, markers = flt.feed("no newline__TCS_DONE__ 1.1 2\n")
    assert visible == "no newline"
    assert markers[0].status == 2


def test_crlf_split_across_reads() -> None:
    flt = MarkerFilter()
    visible, markers = flt.feed("__TCS_DONE__ 1.1 0\r")
    assert visible == ""
    assert len(markers) == 1
    visible, _ = flt.feed("\nPS C:\\> ")
    assert visible == "PS C:\\> "


def test_ordinary_underscores_pass_through() -> None:
    flt = MarkerFilter()
    visible, markers = flt.feed("__init__.py\n")
    assert visible == "__init__.py\n"
    assert markers == []


def test_flush_releases_held_text() -> None:
    flt = MarkerFilter()
    visible, _ = flt.feed("tail __T")
    assert visible == "tail "
    assert flt.flush() == "__T"
    assert flt.flush() == ""


def test_trailing_single_underscore_is_shown() -> None:
    flt = MarkerFilter()
    visible, markers = flt.feed("Enter file_")
    assert visible == "Enter file_"
    assert markers == []

    visible, _ = flt.feed("path: __")
    assert visible == "path: "
    assert flt.flush() == "__"


def test_non_numeric_status_is_none() -> None:
    flt = MarkerFilter()
    _, markers = flt.feed("__TCS_DONE__ 1.4 True\n")
    assert markers == [Marker(DONE, "1.4", None)]
