import logging
import time

from fastapi import FastAPI, Request

logger = logging.getLogger('app.requests')


def install_request_logging(app: FastAPI) -> None:
    @app.middleware('http')
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            '%s %s -> %s (%.1f ms, principal=%s)',
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            getattr(request.state, 'principal_id', None),
        )
        return response
