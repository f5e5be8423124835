"""HackRF discovery and availability checks via ``hackrf_info``."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sweepwatch.util.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Device:
    key: str                 # e.g., "hackrf:0"
    kind: str
    label: str
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeviceProbe:
    available: bool
    reason: str
    devices: List[Device] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "available": self.available,
            "reason": self.reason,
            "devices": [{"key": d.key, "kind": d.kind, "label": d.label, **d.extra} for d in self.devices],
        }


def parse_hackrf_info(output: str) -> List[Device]:
    """Extract one Device per ``Found HackRF`` block."""
    devices: List[Device] = []
    idx = 0
    for block in output.split("Found HackRF"):
        if "Board ID Number" not in block and "Serial number" not in block:
            continue
        serial: Optional[str] = None
        firmware: Optional[str] = None
        for line in block.splitlines():
            line = line.strip()
            lowered = line.lower()
            if lowered.startswith("serial number"):
                serial = line.split(":", 1)[-1].strip()
            elif lowered.startswith("firmware version"):
                firmware = line.split(":", 1)[-1].strip()
        label = f"HackRF One #{idx}" + (f" (SN {serial})" if serial else "")
        devices.append(
            Device(key=f"hackrf:{idx}", kind="hackrf", label=label, extra={"serial": serial, "firmware": firmware, "index": idx})
        )
        idx += 1
    return devices


def probe_hackrf(executable: str = "hackrf_info", timeout: float = 3.0) -> DeviceProbe:
    """Report whether a receiver is attached and free."""
    try:
        cp = subprocess.run([executable], capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        return DeviceProbe(False, f"{executable} not installed")
    except subprocess.TimeoutExpired:
        return DeviceProbe(False, "Device check timeout")
    except OSError as exc:
        return DeviceProbe(False, f"Device check failed: {exc}")

    combined = f"{cp.stdout}\n{cp.stderr}"
    if "Resource busy" in combined:
        return DeviceProbe(False, "Device busy")
    if "No HackRF boards found" in combined:
        return DeviceProbe(False, "No HackRF found")
    devices = parse_hackrf_info(cp.stdout)
    if devices:
        return DeviceProbe(True, "HackRF detected", devices)
    logger.debug("Unrecognized hackrf_info output (rc=%s): %s", cp.returncode, combined.strip())
    return DeviceProbe(False, "Unknown error")
