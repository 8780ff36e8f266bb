from __future__ import annotations

import os
import json
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    File,
    HTTPException,
    Request,
    UploadFile,
    WebSocket,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from .blobs import LocalBlobStore, validate_upload
from .config import Settings, configure_logging, load_settings
from .errors import AuthError, PairchatError, ValidationError
from .models import now_ts
from .presentation import user_summary
from .services import Services, build_services

LOGGER = logging.getLogger("pairchat.api")


def get_services(request: Request) -> Services:
    return request.app.state.services


# =========================
# Schemas
# =========================
class SignupIn(BaseModel):
    username: str = ""
    password: str = ""
    displayName: str = ""


class LoginIn(BaseModel):
    username: str = ""
    password: str = ""


router = APIRouter()


# =========================
# Auth API
# =========================
@router.post("/api/signup")
def signup(data: SignupIn, services: Services = Depends(get_services)):
    user = services.identity.register(data.username, data.password, data.displayName)
    return {"success": True, "username": user.username, "displayName": user.display_name}


@router.post("/api/login")
def login(data: LoginIn, services: Services = Depends(get_services)):
    if not data.username.strip() or not data.password:
        raise ValidationError("Username and password are required")
    user = services.identity.verify(data.username, data.password)
    LOGGER.info("User logged in: %s", user.username)
    return {"success": True, "username": user.username, "displayName": user.display_name}


@router.get("/api/users")
def list_users(services: Services = Depends(get_services)):
    now = now_ts()
    return [user_summary(user, services.presence, now) for user in services.identity.all()]


# =========================
# Upload media
# =========================
@router.post("/upload")
async def upload_media(
    media: Optional[UploadFile] = File(default=None),
    services: Services = Depends(get_services),
):
    if media is None:
        raise ValidationError("No file uploaded")

    data = await media.read()
    content_type = (media.content_type or "").lower().strip()
    original_name = (media.filename or "").strip()[:120]
    validate_upload(original_name, content_type, len(data), services.settings.max_upload_bytes)

    try:
        stored = await run_in_threadpool(services.blobs.save, data, original_name, content_type)
    except Exception as e:
        LOGGER.error("Upload failed for %s: %s", original_name, e)
        raise HTTPException(status_code=500, detail=f"Upload failed: {e}")
    return stored.to_wire()


# =========================
# Misc
# =========================
@router.get("/api/health")
def healthcheck(services: Services = Depends(get_services)):
    return {"ok": True, "ts": now_ts(), **services.settings.build_meta()}


@router.get("/")
def root(services: Services = Depends(get_services)):
    index = os.path.join(services.settings.public_dir, "index.html")
    if os.path.isfile(index):
        return FileResponse(index)
    return {"ok": True, "hint": "public/index.html not found"}


# =========================
# Realtime
# =========================
@router.websocket("/ws")
async def ws_endpoint(ws: WebSocket):
    await ws.app.state.services.gateway.serve(ws)


async def pairchat_error_handler(_request: Request, exc: PairchatError):
    status_code = 401 if isinstance(exc, AuthError) else 400
    return JSONResponse(status_code=status_code, content={"error": exc.message})


async def request_logging_middleware(request: Request, call_next):
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        LOGGER.info(
            json.dumps(
                {
                    "method": request.method,
                    "path": request.url.path,
                    "status": status_code,
                    "latency_ms": latency_ms,
                },
                ensure_ascii=False,
            )
        )


async def expiry_sweeper(services: Services) -> None:
    interval = services.settings.expiry_sweep_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            services.sweep()
        except Exception:
            LOGGER.exception("Expiry sweep failed")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    services: Services = app.state.services
    services.load()
    sweeper = asyncio.create_task(expiry_sweeper(services))
    try:
        yield
    finally:
        sweeper.cancel()
        LOGGER.info("Shutting down, flushing state")
        services.flush()


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else load_settings())
    services = services or build_services(settings)

    app = FastAPI(lifespan=_lifespan)
    app.state.services = services
    app.add_exception_handler(PairchatError, pairchat_error_handler)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_logging_middleware)
    app.include_router(router)

    if isinstance(services.blobs, LocalBlobStore):
        app.mount(
            "/uploads",
            StaticFiles(directory=services.blobs.upload_dir, check_dir=False),
            name="uploads",
        )
    return app


app = create_app()


def run() -> None:
    settings: Settings = app.state.services.settings
    configure_logging(settings.log_level)
    LOGGER.info("Server starting on %s:%s", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
