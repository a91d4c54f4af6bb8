from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.logging_config import configure_logging
from app.request_logging import install_request_logging
from app.routers import purchase_orders
from app.security.identity import install_identity_middleware

configure_logging()

app = FastAPI(title='Retail Admin Purchase Orders')

# The identity middleware is added last so it wraps the request log and runs first.
install_request_logging(app)
install_identity_middleware(app)

app.include_router(purchase_orders.router)


@app.exception_handler(StarletteHTTPException)
async def http_error_envelope(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, dict) else {'message': str(exc.detail)}
    return JSONResponse(
        status_code=exc.status_code,
        content={'success': False, 'message': detail.get('message', ''), 'error': detail},
        headers=getattr(exc, 'headers', None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_envelope(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        # Drop the leading 'body'/'query' segment from the location.
        loc = [str(part) for part in err.get('loc', ())][1:]
        details.append(f'{".".join(loc) or "body"}: {err.get("msg", "invalid")}')
    detail = {'kind': 'ValidationFailed', 'message': 'Validation failed', 'details': details}
    return JSONResponse(status_code=400, content={'success': False, 'message': 'Validation failed', 'error': detail})


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
