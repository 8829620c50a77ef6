# backend/error_handlers.py

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI):
    @app.exception_handler(Exception)
    async def handle_exception(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        logger.error("Unhandled exception", exc_info=exc, extra={"request_id": request_id})
        return JSONResponse(status_code=500, content={"error": "Internal server error", "request_id": request_id})
