"""Bearer-token guard for the control API."""
from __future__ import annotations

import hmac

from flask import abort, current_app, request


def require_auth() -> None:
    """Abort with 401 unless the request carries ``Authorization: Bearer <API_TOKEN>``.

    An empty ``API_TOKEN`` leaves the API open, which is the default for a
    server bound to localhost.
    """
    token = current_app.config.get("API_TOKEN") or ""
    if not token:
        return
    supplied = request.headers.get("Authorization", "")
    if not hmac.compare_digest(supplied.encode("utf-8"), f"Bearer {token}".encode("utf-8")):
        abort(401)
