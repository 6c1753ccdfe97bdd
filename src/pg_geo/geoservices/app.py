"""
FastAPI application implementing a read-only Esri GeoServices REST API
over PostgreSQL/PostGIS.

Endpoints implemented:
- /rest/info
- /{service_id}
- /{service_id}/FeatureServer, /{service_id}/MapServer
- /{service_id}/{server}/{layer_id}
- /{service_id}/{server}/{layer_id}/query
- /{service_id}/{server}/{layer_id}/queryRelatedRecords
- /{service_id}/{server}/{layer_id}/getEstimates
- /{service_id}/{server}/identify

Every service route is also served under /rest/services. The service_id
is a schema name ("public") or a single table ("public.cities").
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from pg_geo import __version__
from pg_geo.query.config import Settings, load_settings
from pg_geo.query.database import Database, DatabaseRegistry
from pg_geo.query.errors import BadRequest, GeoServicesError, InternalError

from .routes import feature_server

logger = logging.getLogger(__name__)

REST_INFO = {
    "currentVersion": 11.0,
    "fullVersion": "11.0.0",
    "owningSystemUrl": "",
    "authInfo": {"isTokenBasedSecurity": False},
}


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    """
    Build the application.

    Settings are read once here. When no database is injected, the
    connection pool is created on startup and closed on shutdown.
    """
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry = None
        if app.state.database is None:
            registry = DatabaseRegistry()
            app.state.database = registry.get(settings.database)
        logger.info("pg-geo %s ready (maxRecordCount=%d)", __version__, settings.max_record_count)
        yield
        if registry is not None:
            registry.close_all()
            app.state.database = None

    app = FastAPI(
        title="PostGIS GeoServices",
        description="Esri GeoServices REST API backed by PostgreSQL/PostGIS",
        version=__version__,
        root_path=os.environ.get("ROOT_PATH", ""),
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    @app.middleware("http")
    async def log_request_timing(request: Request, call_next):
        """Log request timing for performance monitoring."""
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        # Only log query requests (the slow path) at INFO level
        if "/query" in request.url.path or elapsed > 1.0:
            logger.info(
                "%s %s -> %d (%.2fs)",
                request.method,
                request.url,
                response.status_code,
                elapsed,
            )
        return response

    @app.exception_handler(GeoServicesError)
    async def geoservices_error(request: Request, exc: GeoServicesError):
        return JSONResponse(status_code=exc.code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        problems = [
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
            for err in exc.errors()
        ]
        error = BadRequest("Invalid request parameters", details=problems)
        return JSONResponse(status_code=error.code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        error = InternalError(str(exc) or exc.__class__.__name__)
        return JSONResponse(status_code=error.code, content=error.to_dict())

    @app.get("/rest/info")
    @app.post("/rest/info")
    async def rest_info():
        """ArcGIS REST service directory info."""
        return REST_INFO

    app.include_router(feature_server.router, prefix="/rest/services")
    app.include_router(feature_server.router)
    return app


app = create_app()
