# kato_license/main.py
# KatoSync license server.
# Run with: uvicorn kato_license.main:create_app --factory --host 0.0.0.0 --port 8000
import logging
import os

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from kato_license.commerce import LemonSqueezyClient
from kato_license.config import Settings
from kato_license.database import make_engine, make_session_factory
from kato_license.errors import LicenseServerError, MethodError, ValidationError
from kato_license.models import Base
from kato_license.releases import ChangelogClient, ReleaseStore
from kato_license.routes import licenses as license_router
from kato_license.routes import updates as updates_router
from kato_license.routes import webhooks as webhook_router
from kato_license.webhooks.pipeline import WebhookProcessor

logger = logging.getLogger("kato_license")


def create_app(settings: Settings = None, session_factory=None, commerce=None,
               releases=None, changelog=None) -> FastAPI:
    """Build the app. Collaborators default to real clients built from ``settings``."""
    settings = settings or Settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if session_factory is None:
        engine = make_engine(settings.DATABASE_URL)
        # create tables if not present (on startup)
        Base.metadata.create_all(bind=engine)
        session_factory = make_session_factory(engine)

    commerce = commerce or LemonSqueezyClient(
        settings.LEMON_SQUEEZY_API_URL,
        api_key=settings.api_key_for("live"),
        timeout=settings.HTTP_TIMEOUT,
    )
    releases = releases or ReleaseStore(
        settings.AWS_REGION,
        fallback_version=settings.FALLBACK_VERSION,
        access_key_id=settings.AWS_ACCESS_KEY_ID,
        secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
    )
    changelog = changelog or ChangelogClient(settings.CHANGELOG_URL, timeout=settings.CHANGELOG_TIMEOUT)

    app = FastAPI(title="KatoSync License Server")
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.commerce = commerce
    app.state.releases = releases
    app.state.changelog = changelog
    app.state.webhooks = WebhookProcessor(settings, commerce)

    app.include_router(license_router.router)
    app.include_router(updates_router.router)
    app.include_router(webhook_router.router)

    register_error_handlers(app)
    return app


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(LicenseServerError)
    async def license_error(request: Request, exc: LicenseServerError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
            return JSONResponse(status_code=exc.status_code, content={"success": False, "message": "Internal server error"})
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def bad_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content=ValidationError("Malformed request body").to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 405:
            err = MethodError("Method not allowed")
            return JSONResponse(status_code=err.status_code, content=err.to_dict())
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)})

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("kato_license.main:create_app", factory=True, host="0.0.0.0", port=int(os.environ.get("PORT", 8000)), reload=True)
