from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from searchrelay.api.routes import search
from searchrelay.config import settings
from searchrelay.services import logger as log_service
from searchrelay.services.broadcast import BroadcastHub
from searchrelay.services.orchestrator import StreamOrchestrator
from searchrelay.services.session_store import create_session_store
from searchrelay.services.upstream import UpstreamSessionClient


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    store = create_session_store()
    upstream = UpstreamSessionClient()
    hub = BroadcastHub()
    hub.start()
    app.state.store = store
    app.state.hub = hub
    app.state.orchestrator = StreamOrchestrator(upstream, hub, store)
    log_service.log_event(
        event_type="startup",
        message="Search relay started",
        upstream=settings.upstream_base_url,
        store=type(store).__name__,
    )
    yield
    # Shutdown
    logger.info("Search relay shutting down...")
    await app.state.orchestrator.shutdown()
    await hub.shutdown()
    await upstream.aclose()
    await store.close()


app = FastAPI(
    title="SearchRelay",
    description="Streaming search relay between an agent service and browser listeners",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# Routes
app.include_router(search.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "searchrelay"}
