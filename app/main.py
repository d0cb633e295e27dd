import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from app.api.deps import ApiError
from app.api.routes import diagnostics, visibility
from app.config import EngineConfig, settings
from app.services.database import PostgresRunStore
from app.services.orchestrator import RunOrchestrator
from app.services.store import get_run_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    store = get_run_store()
    if isinstance(store, PostgresRunStore):
        await store.ensure_schema()

    stop = asyncio.Event()
    worker: asyncio.Task | None = None
    if settings.vi_worker_enabled:
        orchestrator = RunOrchestrator(store, EngineConfig.from_settings())
        worker = asyncio.create_task(orchestrator.run_worker(stop))
    yield
    # Shutdown
    stop.set()
    if worker is not None:
        await worker
    if isinstance(store, PostgresRunStore):
        await store.close()


app = FastAPI(
    title="Visibility Intelligence",
    description="Measures how often AI assistants cite a domain",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    body = {"error": exc.error}
    if exc.details is not None:
        body["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal error", "details": str(exc)})


# Routes
app.include_router(visibility.router)
app.include_router(diagnostics.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "visibility-engine"}
