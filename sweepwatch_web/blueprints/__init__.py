"""
Blueprints package for SweepWatch Web.

This package contains Flask blueprints that organize routes by function:
- api_sweep: Sweep control and feed endpoints (/api/sweep/*)
- api_device: Receiver probe (/api/device)
- api_debug: Error ring and settings introspection (/api/debug/*)
"""
from __future__ import annotations
