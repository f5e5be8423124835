"""
SweepWatch Web: Flask control surface for the sweep engine.

This package provides the HTTP API that:
- Starts, stops and emergency-stops sweep cycles
- Reports engine status, health and recent samples
- Streams the live event feed as server-sent events

Usage:
    from sweepwatch_web import create_app
    app = create_app(engine)
    app.run(host="127.0.0.1", port=8765)
"""
from __future__ import annotations

__version__ = "0.1.0"

# Import create_app so it's accessible from package root
from sweepwatch_web.app import create_app

__all__ = ["create_app", "__version__"]
