import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from storefront.db import SessionLocal, engine
from storefront.dependencies import TablesMissingError
from storefront.logging_config import configure_logging
from storefront.routers import admin, auth, cron, jobs, orders, public
from storefront.security.headers import install_request_context
from storefront.security.rate_limit import limiter
from storefront.services.audit_service import record_error
from storefront.services.settings_service import TableInspector

log = structlog.get_logger(__name__)


def _tables_missing(request: Request, exc: TablesMissingError) -> JSONResponse:
    log.warning('db.tables_missing', missing=exc.missing)
    return JSONResponse(status_code=503, content={'ok': False, 'tablesMissing': True, 'missing': exc.missing})


def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    log.exception('request.unhandled_error', error=str(exc))
    with SessionLocal() as db:
        record_error(
            db,
            source=request.url.path,
            message=f'{exc.__class__.__name__}: {exc}',
            request_id=getattr(request.state, 'request_id', None),
        )
    return JSONResponse(status_code=500, content={'ok': False, 'error': 'Internal server error'})


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title='Storefront Back-Office')

    app.state.limiter = limiter
    app.state.table_inspector = TableInspector(engine)
    app.state.cj_client = None

    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(TablesMissingError, _tables_missing)
    app.add_exception_handler(Exception, _unhandled)

    install_request_context(app)

    app.include_router(auth.router)
    app.include_router(admin.router)
    app.include_router(jobs.router)
    app.include_router(orders.router)
    app.include_router(cron.router)
    app.include_router(public.router)

    @app.get('/health')
    def health():
        return {'ok': True}

    @app.get('/robots.txt', response_class=PlainTextResponse)
    def robots_txt() -> str:
        return 'User-agent: *\nDisallow: /api/\n'

    return app


app = create_app()
