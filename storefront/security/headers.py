import secrets

import structlog
from fastapi import FastAPI, Request
from starlette.responses import Response


ROBOTS_HEADER = "noindex, nofollow, noarchive"
REQUEST_ID_HEADER = "x-request-id"


def install_request_context(app: FastAPI) -> None:
    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or secrets.token_hex(8)
        request.state.request_id = request_id
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)

        response: Response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        if request.url.path.startswith("/api/admin"):
            response.headers["X-Robots-Tag"] = ROBOTS_HEADER
        return response
