import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from sqlalchemy import text

from .config import settings
from .database import engine, session_scope
from .dispatch import RideDispatcher
from .errors import DispatchError
from .middleware_request_id import RequestIDMiddleware, request_id
from .models import Base
from .presence import close_orphaned_sessions
from .routers import drivers as drivers_router
from .routers import rides as rides_router
from .routers import ws as ws_router
from .ws_manager import ConnectionManager


logger = logging.getLogger("dispatch.app")

REQ = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


async def dispatch_error_handler(request: Request, exc: DispatchError):
    if exc.status_code >= 500:
        logger.warning(
            "%s %s -> %s: %s (request %s)",
            request.method,
            request.url.path,
            exc.code,
            exc.message,
            request_id(request),
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Registry starts empty, so no session may stay open from the last run
    with session_scope() as db:
        closed = close_orphaned_sessions(db)
    if closed:
        logger.warning("closed %s driver sessions left open by a previous run", closed)
    yield


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Captain Dispatch API", version="0.1.0", lifespan=lifespan)

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID + JSON logs
    app.add_middleware(RequestIDMiddleware)
    app.add_exception_handler(DispatchError, dispatch_error_handler)

    if settings.AUTO_CREATE_SCHEMA:
        Base.metadata.create_all(bind=engine)

    app.state.dispatcher = RideDispatcher(ConnectionManager())

    @app.get("/health")
    def health():
        with engine.connect() as conn:
            conn.execute(text("select 1"))
        return {"status": "ok", "env": settings.ENV}

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        REQ.labels(request.method, route, str(response.status_code)).inc()
        REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(rides_router.router)
    app.include_router(drivers_router.router)
    app.include_router(ws_router.router)
    return app


app = create_app()
