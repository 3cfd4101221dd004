import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.database import connect_to_mongo, close_mongo_connection
from .core.errors import PermitEngineError
from .core.logging_config import clear_request_context, setup_logging
from .api.api import api_router

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

# Set up CORS - development configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:4200",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:4200",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


def register_exception_handlers(application: FastAPI):
    """Render domain errors with the same ``{"detail": ...}`` body FastAPI uses"""

    @application.exception_handler(PermitEngineError)
    async def permit_engine_error_handler(request: Request, exc: PermitEngineError):
        body = {"detail": exc.message}
        body.update(exc.details)
        return JSONResponse(status_code=exc.status_code, content=body)

    @application.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})


register_exception_handlers(app)


@app.middleware("http")
async def reset_log_context(request: Request, call_next):
    clear_request_context()
    return await call_next(request)


@app.get("/")
async def root():
    return {
        "message": "Welcome to PermitFlow API",
        "version": settings.VERSION,
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": settings.PROJECT_NAME,
        "version": settings.VERSION
    }


# Database events
@app.on_event("startup")
async def startup_event():
    setup_logging(settings.LOG_LEVEL, settings.GRAYLOG_HOST, settings.GRAYLOG_PORT, settings.CONTAINER_NAME)
    await connect_to_mongo()
    logger.info("%s %s ready", settings.PROJECT_NAME, settings.VERSION)


@app.on_event("shutdown")
async def shutdown_event():
    await close_mongo_connection()


app.include_router(api_router, prefix=settings.API_V1_STR)
