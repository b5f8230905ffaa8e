import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from kcs_portal.core import config
from kcs_portal.database import ConnectionManager, DatabaseError
from kcs_portal.routes import (
    admin_routes,
    auth_routes,
    dashboard_routes,
    engineer_routes,
    evaluation_routes,
    import_routes,
    report_routes,
)

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'DENY',
    'Referrer-Policy': 'no-referrer',
    'Cross-Origin-Resource-Policy': 'same-origin',
}


def validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return 'Invalid request'
    first = errors[0]
    message = str(first.get('msg', 'Invalid request')).removeprefix('Value error, ')
    field = '.'.join(str(part) for part in first.get('loc', ()) if part != 'body')
    return f'{field}: {message}' if field else message


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        detail = exc.detail
        if exc.status_code == status.HTTP_404_NOT_FOUND and detail == 'Not Found':
            detail = 'Route not found'
        return JSONResponse(status_code=exc.status_code, content={'error': detail}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={'error': validation_message(exc)})

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error('Database error on %s %s: %s', request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={'error': 'Database unavailable'},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception('Unhandled error on %s %s', request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={'error': 'Internal server error'},
        )


def create_app(db_manager: ConnectionManager | None = None) -> FastAPI:
    app = FastAPI(
        title='KCS Portal API',
        docs_url='/api/docs' if config.DOCS_ENABLED else None,
        redoc_url=None,
        openapi_url='/api/openapi.json' if config.DOCS_ENABLED else None,
    )
    app.state.db_manager = db_manager or ConnectionManager()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )

    @app.middleware('http')
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    register_exception_handlers(app)

    @app.on_event('startup')
    def initialize_database() -> None:
        config.configure_logging()
        config.validate_runtime_config()
        app.state.db_manager.open()
        logger.info('KCS Portal API started (%s)', config.APP_ENV)

    @app.on_event('shutdown')
    def close_database() -> None:
        app.state.db_manager.close()

    @app.get('/health')
    def health():
        healthy = app.state.db_manager.health_check()
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                'status': 'healthy' if healthy else 'unhealthy',
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'database': 'connected' if healthy else 'disconnected',
            },
        )

    app.include_router(auth_routes.router, prefix='/api/auth')
    app.include_router(engineer_routes.router, prefix='/api/engineers')
    app.include_router(import_routes.router, prefix='/api/evaluations')
    app.include_router(evaluation_routes.router, prefix='/api/evaluations')
    app.include_router(report_routes.router, prefix='/api/reports')
    app.include_router(dashboard_routes.router, prefix='/api/dashboard')
    app.include_router(admin_routes.router, prefix='/api/admin')

    return app


app = create_app()
