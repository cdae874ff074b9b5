import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import bookings
import catalog
import identity
import portfolio
import providers
import reviews
from config import Settings, load_settings
from database import create_client, ensure_indexes, get_database
from errors import ValidationFailed
from security import AuthManager
from storage import LocalMediaStorage, MediaStorage, build_storage

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Reduce verbosity of third-party libraries
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    storage: Optional[MediaStorage] = None,
) -> FastAPI:
    settings = settings or load_settings()
    client = None
    if db is None:
        client = create_client(settings.mongo_url)
        db = get_database(client, settings.database_name)
    storage = storage or build_storage(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting up...")
        try:
            ensure_indexes(db)
        except Exception as e:
            logger.error(f"Failed to create database indexes: {e}")
        yield
        logger.info("Application shutting down...")
        if client is not None:
            client.close()

    # App setup
    app = FastAPI(title="Service Sphere API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.storage = storage
    app.state.auth = AuthManager.from_settings(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        content = {"success": False, "message": str(exc.detail)}
        if isinstance(exc, ValidationFailed) and exc.errors:
            content["errors"] = exc.errors
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} - {exc.detail}")
        return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"success": False, "message": "Validation failed", "errors": errors})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} - Error: {exc}")
        return JSONResponse(status_code=500, content={"success": False, "message": "Server Error"})

    # Routes
    @app.get("/")
    def root():
        return {"message": "Service Sphere API"}

    @app.get("/test")
    def test_database():
        try:
            collections = db.list_collection_names()
            return {"backend": "ok", "database": "ok", "collections": collections}
        except Exception as e:
            return {"backend": "ok", "database": f"error: {str(e)[:80]}"}

    for module in (identity, catalog, bookings, reviews, portfolio, providers):
        app.include_router(module.router)

    if isinstance(storage, LocalMediaStorage):
        app.mount("/uploads", StaticFiles(directory=str(storage.root)), name="uploads")

    return app


settings = load_settings()
configure_logging(settings.log_level)
app = create_app(settings)

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
