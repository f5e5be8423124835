from datetime import datetime

import numpy as np
import pytest

from sweepwatch.errors import ParseError
from sweepwatch.sweep.parser import LineAssembler, is_non_data_line, parse_line

from conftest import data_line


def test_parse_line_extracts_all_columns() -> None:
    line = "2024-05-01, 12:00:00.123456, 2400000000, 2405000000, 1000000.00, 20, -70.10, -65.50, -42.00, -80.25, -77.00"
    sample = parse_line(line)
    assert sample.start_hz == 2_400_000_000
    assert sample.stop_hz == 2_405_000_000
    assert sample.bin_width_hz == 1_000_000
    assert sample.sample_count == 20
    assert sample.bin_count == 5
    np.testing.assert_allclose(sample.power_db, [-70.1, -65.5, -42.0, -80.25, -77.0])
    expected = int(datetime(2024, 5, 1, 12, 0, 0, 123456).timestamp() * 1000)
    assert sample.timestamp_ms == expected


def test_peak_and_center_are_derived_from_bins() -> None:
    sample = parse_line(data_line(powers=(-70.0, -30.0, -60.0, -80.0)))
    assert sample.peak_db == pytest.approx(-30.0)
    # second of four 1.25 MHz bins
    assert sample.peak_hz == pytest.approx(2_400_000_000 + 1.5 * 1_250_000)
    assert sample.center_hz == pytest.approx(2_402_500_000)


def test_power_array_is_read_only() -> None:
    sample = parse_line(data_line())
    with pytest.raises(ValueError):
        sample.power_db[0] = 0.0


def test_unparseable_timestamp_falls_back_to_receipt_clock() -> None:
    line = "garbage, also-garbage, 100000000, 105000000, 500000.00, 20, -50.0, -51.0"
    sample = parse_line(line, received_ms=1_700_000_000_123)
    assert sample.timestamp_ms == 1_700_000_000_123


def test_timestamp_without_fraction_is_accepted() -> None:
    line = "2024-05-01, 12:00:00, 100000000, 105000000, 500000.00, 20, -50.0, -51.0"
    sample = parse_line(line, received_ms=1)
    assert sample.timestamp_ms == int(datetime(2024, 5, 1, 12, 0, 0).timestamp() * 1000)


def test_corrupted_numeric_field_is_rejected() -> None:
    line = data_line().replace("2405000000", "24O5000000")
    with pytest.raises(ParseError) as info:
        parse_line(line)
    assert info.value.line == line


@pytest.mark.parametrize(
    "line",
    [
        "2024-05-01, 12:00:00, 100, 200, 10, 20",
        "2024-05-01, 12:00:00, 200000000, 100000000, 1000.0, 20, -50.0",
        "2024-05-01, 12:00:00, 100000000, 100000000, 1000.0, 20, -50.0",
        "2024-05-01, 12:00:00, 100000000, 105000000, 0, 20, -50.0",
        "2024-05-01, 12:00:00, 100000000, 105000000, -5.0, 20, -50.0",
        "2024-05-01, 12:00:00, 100000000, 105000000, 1000.0, 20, nan",
        "2024-05-01, 12:00:00, 100000000, 105000000, 1000.0, 20, -50.0, inf",
        "2024-05-01, 12:00:00, 100000000, 105000000, 1000.0, 20, -151.0",
        "2024-05-01, 12:00:00, 100000000, 105000000, 1000.0, 20, 51.0",
        "2024-05-01, 12:00:00, 100000000, 105000000, 1000.0, inf, -50.0, -60.0",
        "2024-05-01, 12:00:00, 100000000, 105000000, 1000.0, 1e400, -50.0, -60.0",
        "",
        "   ",
    ],
)
def test_invalid_rows_raise_parse_error(line: str) -> None:
    with pytest.raises(ParseError):
        parse_line(line)


def test_power_range_is_configurable() -> None:
    line = "2024-05-01, 12:00:00, 100000000, 105000000, 1000.0, 20, -151.0"
    sample = parse_line(line, power_range=(-200.0, 0.0))
    assert sample.peak_db == -151.0


@pytest.mark.parametrize(
    "line",
    [
        "Found HackRF",
        "call_result is 0",
        "hackrf_sweep version: 2023.01.1",
        "Stop with Ctrl-C",
        "No HackRF boards found.",
        "hackrf_open() failed: Resource busy (-1000)",
        "USB error: timeout",
        "WARNING: something",
    ],
)
def test_banner_and_diagnostic_lines_are_not_data(line: str) -> None:
    assert is_non_data_line(line)
    with pytest.raises(ParseError):
        parse_line(line)


def test_line_assembler_joins_partial_chunks() -> None:
    asm = LineAssembler()
    assert asm.feed("abc") == []
    assert asm.feed("def\nghi") == ["abcdef"]
    assert asm.pending == "ghi"
    assert asm.feed("\r\n\n\njkl\n") == ["ghi", "jkl"]
    assert asm.flush() == []


def test_line_assembler_handles_split_utf8_bytes() -> None:
    asm = LineAssembler()
    encoded = "µs\n".encode("utf-8")
    assert asm.feed(encoded[:1]) == []
    assert asm.feed(encoded[1:]) == ["µs"]


def test_line_assembler_overflow_keeps_newest_half() -> None:
    asm = LineAssembler(limit=10)
    assert asm.feed("0123456789AB") == []
    assert asm.overflows == 1
    assert asm.pending == "789AB"
    assert asm.feed("\n") == ["789AB"]


def test_line_assembler_flush_returns_trailing_text() -> None:
    asm = LineAssembler()
    asm.feed("tail-without-newline")
    assert asm.flush() == ["tail-without-newline"]
    assert asm.pending == ""
