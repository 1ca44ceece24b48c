from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routes import babies as baby_routes
from .routes import invites as invite_routes
from .routes import users as user_routes
from .sessions import SessionRegistry
from .supabase import SupabaseError, get_admin_client
from .sync import SyncService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    if getattr(app.state, "sessions", None) is None:
        app.state.sessions = SessionRegistry(SyncService(get_admin_client()))
    try:
        yield
    finally:
        app.state.sessions.close_all()


app = FastAPI(
    title="Baby Office Hours API",
    version="0.1.0",
    description="Broadcasts a baby's availability for video calls to co-parents and family",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

app.include_router(user_routes.router)
app.include_router(baby_routes.router)
app.include_router(invite_routes.router)


@app.exception_handler(SupabaseError)
async def supabase_error_handler(request: Request, exc: SupabaseError) -> JSONResponse:
    logger.warning(
        "store request failed",
        extra={"path": request.url.path, "action": exc.action, "status": exc.status_code},
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
