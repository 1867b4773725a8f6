from fastapi import FastAPI

from app.stocklink.api import api_router
from app.stocklink.core.config import settings
from app.stocklink.core.errors import setup_exception_handlers
from app.stocklink.core.logging import configure_logging
from app.stocklink.middleware.observability import ObservabilityMiddleware
from app.stocklink.middleware.request_context import RequestContextMiddleware


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=settings.APP_NAME, version="0.1.0")
    # Added last, so it runs outermost.
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(ObservabilityMiddleware)
    setup_exception_handlers(app)
    app.include_router(api_router)
    return app


app = create_app()
