"""Tests for the before/after summary."""

import pytest

from optimg import SizeReport, align_columns, format_report, humanize, size_reduction

# ============================================================================
# HUMANIZE
# ============================================================================


@pytest.mark.parametrize(
    "num_bytes,expected",
    [
        (0, "0.0B"),
        (1, "1.0B"),
        (1023, "1023.0B"),
        (1024, "1.0KB"),
        (1536, "1.5KB"),
        (1024 * 1024, "1.0MB"),
        (5 * 1024**3 + 512 * 1024**2, "5.5GB"),
        (1024**7, "1.0ZB"),
        (1024**8, "1.0YB"),
    ],
)
def test_humanize(num_bytes, expected):
    assert humanize(num_bytes) == expected


# ============================================================================
# SIZE REDUCTION
# ============================================================================


def test_size_reduction():
    assert size_reduction(1000, 250) == pytest.approx(75.0)


def test_size_reduction_negative_when_output_grew():
    assert size_reduction(1000, 1500) == pytest.approx(-50.0)


def test_size_reduction_empty_input():
    assert size_reduction(0, 10) == 0.0


# ============================================================================
# TABLE LAYOUT
# ============================================================================


def test_align_columns_ignores_last_cell_width():
    lines = align_columns([("a", "bb", "a very long trailing cell"), ("ccc", "d")])

    assert lines == [
        "a      bb    a very long trailing cell",
        "ccc    d",
    ]


def _report(**overrides) -> SizeReport:
    values = dict(
        input_path="in.jpg",
        output_path="in_opt.jpg",
        input_width=4000,
        input_height=3000,
        output_width=1000,
        output_height=750,
        input_bytes=2048,
        output_bytes=512,
    )
    values.update(overrides)
    return SizeReport(**values)


def test_format_report():
    lines = format_report(_report()).splitlines()

    assert lines == [
        "File Name          in.jpg             ->     in_opt.jpg",
        "File Dimensions    4000 x 3000 px     ->     1000 x 750 px",
        "File Size          2.0KB              ->     512.0B",
        "Size Reduction     75.0%",
    ]


def test_format_report_negative_reduction():
    text = format_report(_report(input_bytes=1000, output_bytes=1100))

    assert text.splitlines()[-1].endswith("-10.0%")


def test_report_reduction_property():
    assert _report().reduction == pytest.approx(75.0)
