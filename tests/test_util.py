import json
import logging

import pytest

from sweepwatch.config import EngineSettings
from sweepwatch.events import ErrorNotice, StatusEvent
from sweepwatch.sweep.parser import parse_line
from sweepwatch.sweep.types import parse_band
from sweepwatch.util.duration import parse_duration_to_millis, parse_duration_to_seconds
from sweepwatch.util.journal import EventJournal
from sweepwatch.util.logging import JSONFormatter, get_logger

from conftest import data_line


def test_settings_from_env_mapping() -> None:
    settings = EngineSettings.from_env(
        {
            "SWEEPWATCH_EXECUTABLE": "sudo hackrf_sweep",
            "SWEEPWATCH_MAX_FAILURES": "5",
            "SWEEPWATCH_BACKOFF_BASE_S": "0.5",
            "SWEEPWATCH_REAP_ORPHANS": "yes",
            "SWEEPWATCH_BUFFER_CAPACITY": "not-a-number",
        }
    )
    assert settings.command_prefix == ["sudo", "hackrf_sweep"]
    assert settings.max_failures == 5
    assert settings.backoff_base_s == 0.5
    assert settings.reap_orphans_on_start is True
    assert settings.buffer_capacity == 1000


def test_zero_gain_from_env_is_kept() -> None:
    settings = EngineSettings.from_env({"SWEEPWATCH_LNA_GAIN": "0", "SWEEPWATCH_VGA_GAIN": "0"})
    assert settings.default_lna_gain_db == 0
    assert settings.default_vga_gain_db == 0
    # counts still floor at one
    assert EngineSettings.from_env({"SWEEPWATCH_MAX_FAILURES": "0"}).max_failures == 1


def test_settle_gap_is_capped() -> None:
    settings = EngineSettings()
    assert settings.settle_s(1000) == pytest.approx(0.25)
    assert settings.settle_s(60_000) == pytest.approx(3.0)
    assert settings.with_overrides(settle_cap_s=0.0).settle_s(1000) == 0.0


def test_duration_parsing() -> None:
    assert parse_duration_to_seconds("500ms") == pytest.approx(0.5)
    assert parse_duration_to_seconds("2h") == 7200.0
    assert parse_duration_to_seconds("15") == 15.0
    assert parse_duration_to_millis("1.5s") == 1500
    assert parse_duration_to_seconds(None) is None


def test_journal_records_feed_events(tmp_path) -> None:
    path = tmp_path / "logs" / "feed.jsonl"
    mirror = tmp_path / "mirror.jsonl"
    journal = EventJournal(path, [mirror, path])
    band = parse_band("2400")
    journal.record(StatusEvent.running(band))
    journal.record(ErrorNotice("no_data", "no samples", band))
    journal.record(parse_line(data_line()))
    lines = path.read_text(encoding="utf-8").splitlines()
    assert mirror.read_text(encoding="utf-8").splitlines() == lines
    records = [json.loads(line) for line in lines]
    assert [r["event"] for r in records] == ["status", "error", "sample"]
    assert records[0]["state"] == "running"
    assert "power_db" not in records[2]
    assert journal.written == 3


def test_journal_can_keep_power(tmp_path) -> None:
    journal = EventJournal(tmp_path / "feed.jsonl", include_power=True)
    journal.record(parse_line(data_line()))
    record = json.loads((tmp_path / "feed.jsonl").read_text(encoding="utf-8"))
    assert record["power_db"] == [-70.0, -65.5, -42.0, -80.25]


def test_json_formatter_copies_context() -> None:
    record = logging.LogRecord("sweepwatch.test", logging.WARNING, __file__, 1, "exit %s", ("x",), None)
    record.pid = 4242
    record.band = "2400 MHz"
    payload = json.loads(JSONFormatter().format(record))
    assert payload["message"] == "exit x"
    assert payload["pid"] == 4242
    assert payload["band"] == "2400 MHz"
    assert payload["level"] == "WARNING"


def test_get_logger_namespaces_modules() -> None:
    assert get_logger("engine").name == "sweepwatch.engine"
    assert get_logger("sweepwatch.sweep").name == "sweepwatch.sweep"
    assert get_logger("__main__").name == "sweepwatch.main"
