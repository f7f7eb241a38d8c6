import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from .config import Settings
from .db import Database
from .exception_handlers import error_response, register_exception_handlers
from .logging_config import configure_logging
from .routers.orders import router as orders_router
from .routers.dispatches import router as dispatches_router
from .routers.stock_reports import router as stock_reports_router
from .routers.production import router as production_router

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Order fulfillment, dispatch balances and the stock ledger for a steel melting plant",
        version="1.0.0"
    )
    app.state.settings = settings
    app.state.database = Database(settings.DATABASE_URL, lock_timeout=settings.LOCK_TIMEOUT_SECONDS)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(orders_router)
    app.include_router(dispatches_router)
    app.include_router(stock_reports_router)
    app.include_router(production_router)

    @app.get("/health", tags=["Health"])
    def health(request: Request):
        try:
            with request.app.state.database.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            logger.exception("Health check failed")
            return error_response("Database unavailable", 503)
        return {"status": "ok"}

    @app.on_event("startup")
    def on_startup():
        logger.info("Creating database tables at startup...")
        app.state.database.create_all()
        logger.info("Database ready")

    @app.on_event("shutdown")
    def on_shutdown():
        app.state.database.dispose()

    return app


app = create_app()
