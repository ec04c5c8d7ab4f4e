from __future__ import annotations

"""Request body size guard for the write endpoints.

Firmware payloads are a few hundred bytes; anything near the limit is a
misbehaving client. Keep a proxy-level limit in front of it as well.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..observability import get_request_id


_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """413 for bodies over ``max_body_bytes`` on the listed path prefixes.

    Answers with the device-facing ``{ok, error}`` envelope so firmware can
    treat it like any other ingest rejection.
    """

    def __init__(self, app, *, max_body_bytes: int, paths: list[str] | None = None) -> None:
        super().__init__(app)
        self.max_body_bytes = int(max_body_bytes)
        self.paths = tuple(paths or ())

    def _applies(self, request: Request) -> bool:
        if self.max_body_bytes <= 0 or request.method.upper() not in _BODY_METHODS:
            return False
        return not self.paths or request.url.path.startswith(self.paths)

    async def dispatch(self, request: Request, call_next) -> Response:
        if not self._applies(request):
            return await call_next(request)

        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_body_bytes:
            return _too_large()

        # Chunked or lying clients: measure what actually arrived.
        body = await request.body()
        if len(body) > self.max_body_bytes:
            return _too_large()
        request._body = body  # type: ignore[attr-defined]
        return await call_next(request)


def _too_large() -> JSONResponse:
    return JSONResponse(
        status_code=413,
        content={"ok": False, "error": "payload too large"},
        headers={"X-Request-ID": get_request_id() or "unknown"},
    )
