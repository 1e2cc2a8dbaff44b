import logging

import uvicorn
from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from authgate.config import settings
from authgate.database import Base, engine
from authgate.exception_handlers import register_exception_handlers
from authgate.middleware.logging import StructuredLoggingMiddleware, setup_structured_logging
from authgate.middleware.rate_limit import configure_rate_limiting
from authgate.routes import two_factor, webauthn_credentials
from authgate.utils.challenge_store import RedisChallengeStore, get_challenge_store

setup_structured_logging(log_level=settings.log_level, json_format=settings.log_json)
logger = logging.getLogger("authgate.main")


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Second factor authentication: authenticator apps, backup codes and security keys",
        debug=settings.debug,
        version=settings.app_version,
    )

    # Add middleware
    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.secret_key,
        max_age=settings.session_max_age_seconds,
        same_site="lax",
        https_only=settings.environment == "production",
    )

    configure_rate_limiting(app)
    register_exception_handlers(app)

    # Include routers
    app.include_router(two_factor.router, prefix="/2fa")
    app.include_router(webauthn_credentials.router, prefix="/webauthn")

    @app.get("/health", tags=["Root"])
    async def health():
        return {"status": "ok", "version": settings.app_version}

    @app.on_event("startup")
    async def startup_event():
        logger.info(f"Starting {settings.app_name} in {settings.environment} mode")
        if settings.debug:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created (if not existing).")
        await get_challenge_store()

    @app.on_event("shutdown")
    async def shutdown_event():
        store = await get_challenge_store()
        if isinstance(store, RedisChallengeStore):
            await store.disconnect()
        await engine.dispose()
        logger.info("Shutting down the application...")

    if settings.debug:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)  # Logs SQL statements

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.debug)
