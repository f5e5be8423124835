#!/usr/bin/env python3
"""
SweepWatch Web entry point.

Thin CLI shim that parses arguments, starts a sweep engine and runs the
Flask control API in front of it.

Run:
    python sweepwatch-web.py --host 127.0.0.1 --port 8765

Environment:
    SWEEPWATCH_TOKEN          Protect /api/* endpoints (optional)
    SWEEPWATCH_EXECUTABLE     Sweep command (default hackrf_sweep)
    SWEEPWATCH_LOG_LEVEL      Log level (default INFO)
"""
from __future__ import annotations

import argparse


def parse_args():
    ap = argparse.ArgumentParser(
        description="SweepWatch Web: HTTP control surface for hackrf_sweep cycles"
    )
    ap.add_argument(
        "--host",
        default=None,
        help="Host to bind the server (default: SWEEPWATCH_HOST or 127.0.0.1)",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: SWEEPWATCH_PORT or 8765)",
    )
    return ap.parse_args()


def main():
    args = parse_args()

    from sweepwatch.cli import main as cli_main

    argv = ["serve"]
    if args.host:
        argv += ["--host", args.host]
    if args.port:
        argv += ["--port", str(args.port)]
    raise SystemExit(cli_main(argv))


if __name__ == "__main__":
    main()
