"""Process exit codes returned by the ``sweepwatch`` command.

0 and 1 keep their usual meaning and 2 matches argparse's usage error;
3 and above say why a sweep could not run or did not finish.

Usage:
    from sweepwatch.util.exit_codes import ExitCode
    sys.exit(ExitCode.SPAWN_FAILED)
"""

from __future__ import annotations


class ExitCode:
    SUCCESS: int = 0
    GENERAL_ERROR: int = 1          # e.g. rejected lines under parse --strict
    INVALID_ARGS: int = 2           # bad bands, dwell or gain
    SPAWN_FAILED: int = 3           # hackrf_sweep missing or not executable
    DEVICE_UNAVAILABLE: int = 4     # probe found no free receiver
    TERMINAL_FAILURE: int = 5       # retry budget exhausted mid-run

    _MESSAGES = {
        0: "ok",
        1: "error",
        2: "invalid sweep configuration",
        3: "sweep process could not be launched",
        4: "receiver missing or busy",
        5: "sweep cycle failed after retries",
    }

    @classmethod
    def message(cls, code: int) -> str:
        return cls._MESSAGES.get(code, f"unknown exit code {code}")
