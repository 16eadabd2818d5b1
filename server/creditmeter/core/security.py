from __future__ import annotations

from fastapi import HTTPException, Request

from server.creditmeter.core.config import Settings

_MAX_USER_ID_LENGTH = 128


def get_user_id_optional(request: Request) -> str | None:
    settings: Settings = request.app.state.settings
    raw = request.headers.get(settings.user_header)
    if raw is None:
        return None
    user_id = raw.strip()
    return user_id or None


def require_user_id(request: Request) -> str:
    """Identity is established upstream; the caller forwards the opaque user id in a header."""
    user_id = get_user_id_optional(request)
    if not user_id:
        raise HTTPException(status_code=401, detail="User ID is required")
    if len(user_id) > _MAX_USER_ID_LENGTH:
        raise HTTPException(status_code=400, detail="User ID is too long")
    request.state.user_id = user_id
    return user_id
