from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import structlog

from ..core.errors import AdmissionError, QueueFull, QueueTimeout
from ..isolation.isolation import probe_capabilities
from ..logging import setup_logging
from ..services.dispatcher import Dispatcher

log = structlog.get_logger(__name__)


# --------- Schemas ---------
class RunReq(BaseModel):
    language: str
    code: str
    stdin: Optional[str] = ""


class RunRes(BaseModel):
    stdout: str
    stderr: str
    exit_code: Optional[int] = None
    timed_out: bool = False
    truncated: bool = False
    killed: bool = False
    status: str
    duration_s: float = 0.0


class HealthRes(BaseModel):
    ok: bool
    slots: int
    in_use: int
    queued: int
    isolation: dict


def create_app(dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        app.state.dispatcher = dispatcher or Dispatcher()
        log.info("coderun_started", **app.state.dispatcher.scheduler.stats())
        yield

    app = FastAPI(title="coderun", lifespan=lifespan)
    # Auth lives in the calling application; CORS stays open for its frontend.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(AdmissionError)
    async def admission_error(request: Request, exc: AdmissionError):
        headers = {}
        if isinstance(exc, (QueueFull, QueueTimeout)):
            headers["Retry-After"] = "1"
        return JSONResponse(
            status_code=exc.status,
            content={"error": exc.code, "detail": str(exc)},
            headers=headers,
        )

    # --------- Endpoints ---------

    @app.get("/health", response_model=HealthRes)
    def health(request: Request):
        d: Dispatcher = request.app.state.dispatcher
        return HealthRes(ok=True, isolation=probe_capabilities(d.scheduler.isolation), **d.scheduler.stats())

    @app.post("/api/run", response_model=RunRes)
    async def run(req: RunReq, request: Request):
        d: Dispatcher = request.app.state.dispatcher
        res = await d.run(req.language, req.code, req.stdin)
        return RunRes(
            stdout=res.stdout,
            stderr=res.stderr,
            exit_code=res.exit_code,
            timed_out=res.timed_out,
            truncated=res.truncated,
            killed=res.killed,
            status=res.status.value,
            duration_s=res.duration_s,
        )

    return app


app = create_app()
