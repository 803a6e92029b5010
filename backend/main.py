"""
CampCAD - Computer-Aided Dispatch for camp emergency response
Call lifecycle, unit assignment and dispatch protocol API
"""

import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from routers import calls, units, protocol, websocket
from services.dispatch.errors import DispatchError, PersistenceFailure

LOG_LEVEL = os.environ.get("CAMPCAD_LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.environ.get("CAMPCAD_CORS_ORIGINS", "*").split(",") if o.strip()]

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("CampCAD starting up...")
    websocket.start_change_listener()
    yield
    # Shutdown
    websocket.stop_change_listener()
    logger.info("CampCAD shutting down...")

app = FastAPI(
    title="CampCAD API",
    description="Computer-Aided Dispatch for camp emergency response",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    if isinstance(exc, PersistenceFailure):
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "errors": getattr(exc, "errors", [])},
    )


# Routers
app.include_router(calls.router, prefix="/api/calls", tags=["Calls"])
app.include_router(units.router, prefix="/api/units", tags=["Units"])
app.include_router(protocol.router, prefix="/api/protocol", tags=["Protocol"])
app.include_router(websocket.router, tags=["WebSocket"])

@app.get("/")
async def root():
    return {"status": "ok", "service": "CampCAD API", "version": "1.0.0"}

@app.get("/health")
async def health():
    return {"status": "healthy"}
