from __future__ import annotations

from collections.abc import Iterable

from fastapi import Request
from fastapi.responses import PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Rejects oversized write requests by their declared Content-Length."""

    def __init__(self, app, *, max_body_bytes: int, include_paths: Iterable[str] | None = None) -> None:
        super().__init__(app)
        self._max_body_bytes = max_body_bytes
        self._include_paths = tuple(include_paths or [])

    def _applies_to(self, request: Request) -> bool:
        if request.method not in {"POST", "PUT", "PATCH"}:
            return False
        return not self._include_paths or any(request.url.path.startswith(p) for p in self._include_paths)

    async def dispatch(self, request: Request, call_next):
        if self._applies_to(request):
            content_length = request.headers.get("content-length")
            if content_length:
                try:
                    size = int(content_length)
                except ValueError:
                    return PlainTextResponse("Invalid Content-Length header.", status_code=400)
                if size > self._max_body_bytes:
                    return PlainTextResponse("Request body too large.", status_code=413)
        return await call_next(request)
