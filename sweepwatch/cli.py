#!/usr/bin/env python3
"""SweepWatch command-line entrypoint (package module)."""

from __future__ import annotations

import argparse
import json
import queue
import sys
import time
from pathlib import Path
from typing import List, Optional, TextIO

from sweepwatch.config import EngineSettings
from sweepwatch.device import probe_hackrf
from sweepwatch.errors import CallerError, DeviceUnavailableError, ParseError, SpawnError
from sweepwatch.events import ErrorNotice, StatusEvent, StatusKind, event_to_dict
from sweepwatch.sweep.engine import SweepEngine
from sweepwatch.sweep.parser import parse_line
from sweepwatch.sweep.types import GainParams, SpectrumSample
from sweepwatch.util.duration import parse_duration_to_millis, parse_duration_to_seconds
from sweepwatch.util.exit_codes import ExitCode
from sweepwatch.util.journal import EventJournal
from sweepwatch.util.logging import configure_logging, get_logger

logger = get_logger(__name__)


def _describe(event) -> str:
    if isinstance(event, SpectrumSample):
        return (
            f"sample {event.start_hz / 1e6:.3f}-{event.stop_hz / 1e6:.3f} MHz "
            f"bins={event.bin_count} peak={event.peak_db:.1f} dB @ {event.peak_hz / 1e6:.3f} MHz"
        )
    if isinstance(event, ErrorNotice):
        return f"error [{event.kind}]{' (fatal)' if event.fatal else ''}: {event.message}"
    return f"status {event}"


def cmd_run(args: argparse.Namespace) -> int:
    settings = EngineSettings.from_env()
    if args.executable:
        settings = settings.with_overrides(executable=args.executable)
    gain = GainParams(
        lna_gain_db=args.lna if args.lna is not None else settings.default_lna_gain_db,
        vga_gain_db=args.vga if args.vga is not None else settings.default_vga_gain_db,
        bin_width_hz=args.bin_width if args.bin_width is not None else settings.default_bin_width_hz,
        amp_enable=args.amp,
        antenna_enable=args.antenna,
    )
    journal = EventJournal(Path(args.jsonl)) if args.jsonl else None
    engine = SweepEngine(settings)
    sub = engine.subscribe(name="cli")
    failed = False
    try:
        engine.start_cycle(args.bands, args.dwell_ms, gain)
        deadline = time.monotonic() + args.duration if args.duration else None
        while deadline is None or time.monotonic() < deadline:
            try:
                event = sub.get(timeout=0.5)
            except queue.Empty:
                continue
            if journal is not None:
                journal.record(event)
            if not args.quiet or not isinstance(event, SpectrumSample):
                print(_describe(event), flush=True)
            if isinstance(event, StatusEvent):
                if event.kind is StatusKind.FAILED:
                    failed = True
                elif event.kind is StatusKind.STOPPED:
                    break
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping sweep")
    finally:
        engine.shutdown()
    return ExitCode.TERMINAL_FAILURE if failed else ExitCode.SUCCESS


def cmd_serve(args: argparse.Namespace) -> int:
    from sweepwatch_web import create_app

    settings = EngineSettings.from_env()
    if args.executable:
        settings = settings.with_overrides(executable=args.executable)
    engine = SweepEngine(settings)
    engine.start()
    app = create_app(engine, token=args.token)
    try:
        app.run(host=args.host, port=args.port, debug=False, threaded=True)
    finally:
        engine.shutdown()
    return ExitCode.SUCCESS


def _open_input(path: str) -> TextIO:
    if path == "-":
        return sys.stdin
    return open(path, "r", encoding="utf-8", errors="replace")


def cmd_parse(args: argparse.Namespace) -> int:
    errors = 0
    parsed = 0
    fh = _open_input(args.input)
    try:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            try:
                sample = parse_line(line)
            except ParseError as exc:
                errors += 1
                print(f"line {lineno}: {exc}", file=sys.stderr)
                continue
            parsed += 1
            payload = event_to_dict(sample)
            if not args.with_power:
                payload.pop("power_db", None)
            print(json.dumps(payload))
    finally:
        if fh is not sys.stdin:
            fh.close()
    logger.info("Parsed %d line(s), %d rejected", parsed, errors)
    if errors and args.strict:
        return ExitCode.GENERAL_ERROR
    return ExitCode.SUCCESS


def cmd_probe(args: argparse.Namespace) -> int:
    probe = probe_hackrf(args.hackrf_info, timeout=args.timeout)
    print(json.dumps(probe.to_dict(), indent=2))
    return ExitCode.SUCCESS if probe.available else ExitCode.DEVICE_UNAVAILABLE


def _dwell_arg(text: str) -> int:
    # Bare numbers are milliseconds to match dwell_ms
    if text.strip().isdigit():
        return int(text)
    value = parse_duration_to_millis(text)
    if value is None or value <= 0:
        raise argparse.ArgumentTypeError(f"Invalid dwell '{text}'")
    return value


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="sweepwatch", description="Drive hackrf_sweep across frequency bands")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR (default from SWEEPWATCH_LOG_LEVEL)")
    p.add_argument("--log-json", default=None, help="Also write JSON log lines to this file")
    sub = p.add_subparsers(dest="cmd", required=True)

    # run
    s = sub.add_parser("run", help="Cycle through bands and print the live feed")
    s.add_argument("bands", nargs="+", help="Band centres, e.g. 2400 (MHz), 915MHz, 2.4GHz")
    s.add_argument("--dwell", dest="dwell_ms", type=_dwell_arg, default=10_000, help="Dwell per band: ms or 500ms/10s/5m (default 10s)")
    s.add_argument("--duration", type=parse_duration_to_seconds, default=None, help="Stop after this long (e.g. 30m)")
    s.add_argument("--lna", type=int, default=None, help="LNA gain dB (0-40, step 8)")
    s.add_argument("--vga", type=int, default=None, help="VGA gain dB (0-62, step 2)")
    s.add_argument("--bin-width", dest="bin_width", type=int, default=None, help="FFT bin width Hz (2445-5000000)")
    s.add_argument("--amp", action="store_true", help="Enable the RF amplifier")
    s.add_argument("--antenna", action="store_true", help="Enable antenna port power")
    s.add_argument("--executable", default=None, help="Override the sweep command (default hackrf_sweep)")
    s.add_argument("--jsonl", default=None, help="Append feed events to this JSON-lines file")
    s.add_argument("--quiet", action="store_true", help="Only print status and error events")
    s.set_defaults(func=cmd_run)

    # serve
    s = sub.add_parser("serve", help="Run the HTTP control API")
    s.add_argument("--host", default=None)
    s.add_argument("--port", type=int, default=None)
    s.add_argument("--token", default=None, help="Bearer token for Authorization header")
    s.add_argument("--executable", default=None, help="Override the sweep command (default hackrf_sweep)")
    s.set_defaults(func=cmd_serve)

    # parse
    s = sub.add_parser("parse", help="Parse captured hackrf_sweep output into JSON lines")
    s.add_argument("input", nargs="?", default="-", help="File to read ('-' for stdin)")
    s.add_argument("--with-power", action="store_true", help="Include the per-bin power array")
    s.add_argument("--strict", action="store_true", help="Exit non-zero if any line is rejected")
    s.set_defaults(func=cmd_parse)

    # probe
    s = sub.add_parser("probe", help="Check whether a HackRF is attached and free")
    s.add_argument("--hackrf-info", default="hackrf_info", help="Path to hackrf_info")
    s.add_argument("--timeout", type=float, default=3.0)
    s.set_defaults(func=cmd_probe)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_arg_parser()
    args = ap.parse_args(argv)
    configure_logging(level=args.log_level, json_file=args.log_json)
    if getattr(args, "host", False) is None or getattr(args, "port", False) is None:
        from sweepwatch_web.config import HOST, PORT

        args.host = args.host or HOST
        args.port = args.port or PORT
    try:
        rc = args.func(args)
    except CallerError as e:
        print(f"error: {e}", file=sys.stderr)
        rc = ExitCode.INVALID_ARGS
    except DeviceUnavailableError as e:
        print(f"error: {e}", file=sys.stderr)
        rc = ExitCode.DEVICE_UNAVAILABLE
    except SpawnError as e:
        print(f"error: {e}", file=sys.stderr)
        rc = ExitCode.SPAWN_FAILED
    if rc != ExitCode.SUCCESS:
        logger.debug("Exit %d: %s", rc, ExitCode.message(rc))
    return rc


if __name__ == "__main__":
    sys.exit(main())
