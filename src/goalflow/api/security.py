from __future__ import annotations

import base64
import os
import re
import secrets

from fastapi import HTTPException, Request


_CHANGE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")
_REALM = 'Basic realm="goalflow-write"'


def require_safe_change_id(value: str) -> str:
    v = str(value)
    if not _CHANGE_ID_RE.match(v):
        raise HTTPException(status_code=400, detail="invalid change_event_id")
    return v


def _unauthorized() -> HTTPException:
    return HTTPException(status_code=401, detail="unauthorized", headers={"WWW-Authenticate": _REALM})


def enforce_write_auth(request: Request) -> None:
    """Optional auth for write endpoints.

    - off (default): no auth required
    - basic: HTTP Basic auth required for write endpoints
    """
    mode = str(os.getenv("GOALFLOW_WRITE_AUTH_MODE", "off") or "off").strip().lower()
    if mode in ("", "off", "false", "0", "none"):
        return
    if mode != "basic":
        raise HTTPException(status_code=500, detail="invalid GOALFLOW_WRITE_AUTH_MODE (expected off|basic)")

    user = str(os.getenv("GOALFLOW_WRITE_AUTH_USER", "") or "").strip()
    passwd = str(os.getenv("GOALFLOW_WRITE_AUTH_PASS", "") or "").strip()
    if not user or not passwd:
        raise HTTPException(
            status_code=500, detail="write auth enabled but missing GOALFLOW_WRITE_AUTH_USER/GOALFLOW_WRITE_AUTH_PASS"
        )

    auth = request.headers.get("authorization") or ""
    if not auth.lower().startswith("basic "):
        raise _unauthorized()

    token = auth.split(" ", 1)[1].strip()
    try:
        decoded = base64.b64decode(token).decode("utf-8")
    except Exception:  # noqa: BLE001
        raise _unauthorized()

    if ":" not in decoded:
        raise _unauthorized()
    got_user, got_pass = decoded.split(":", 1)
    if not (secrets.compare_digest(got_user, user) and secrets.compare_digest(got_pass, passwd)):
        raise _unauthorized()
