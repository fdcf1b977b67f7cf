from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from refinery import __version__
from refinery.core.audit import (
    CONFIG_UPDATE,
    SESSION_CALLBACK,
    SESSION_CANCEL,
    SESSION_START,
    generate_request_id,
    log_event,
)
from refinery.core.config import Settings
from refinery.core.errors import CallbackRejected, InvalidRequest, SessionNotFound
from refinery.core.logging_config import setup_logging
from refinery.core.orchestration_config import (
    DEFAULT_CONFIG,
    deep_merge,
    load_config,
    save_config,
    validate_config,
)
from refinery.core.rate_limit import RateLimiter
from refinery.core.session import SessionManager
from refinery.core.store import JsonFileStore
from refinery.integrations.agent_client import FastAgentClient
from refinery.orchestration.evaluator import Evaluator

logger = logging.getLogger("refinery.gateway")

_MAX_CALLBACK_BYTES = 200000


class StartRequest(BaseModel):
    prompt: str
    mode: Optional[str] = None
    options: Optional[Dict[str, Any]] = None


class StartResponse(BaseModel):
    id: str
    sessionUrl: str


def create_app(
    settings: Optional[Settings] = None,
    agent: Optional[Callable[..., Any]] = None,
    evaluator: Optional[Callable[..., Any]] = None,
) -> FastAPI:
    # Ensure .env is loaded before anything reads os.getenv
    load_dotenv(override=False)

    settings = settings or Settings.from_env()
    setup_logging(
        log_dir=settings.log_dir,
        log_level=settings.log_level,
        clear_on_launch=settings.clear_logs_on_launch,
    )
    os.makedirs(settings.data_dir, exist_ok=True)

    store = JsonFileStore(settings.store_path)
    manager = SessionManager(
        agent=agent or FastAgentClient(settings.agent_url, settings.agent_key, timeout=settings.agent_timeout),
        store=store,
        evaluator=evaluator or Evaluator(settings.score_webhook_url, settings.score_webhook_secret),
        callback_secret=settings.callback_secret,
        stream_interval=settings.stream_interval,
    )
    rate_limiter = RateLimiter(
        max_calls=settings.rate_limit_calls,
        window_seconds=settings.rate_limit_seconds,
    )
    if not settings.callback_secret:
        logger.warning("REFINERY_CALLBACK_SECRET not set; session callbacks will be rejected")

    app = FastAPI(title="Refinery", version=__version__)
    app.state.manager = manager
    app.state.settings = settings

    @app.exception_handler(Exception)
    async def _internal_error(request: Request, exc: Exception) -> JSONResponse:
        ref = generate_request_id()
        logger.exception("Unhandled error on %s %s (ref=%s)", request.method, request.url.path, ref)
        return JSONResponse(status_code=500, content={"detail": "internal error", "ref": ref})

    def _lookup(call: Callable[[], Any]) -> Any:
        try:
            return call()
        except SessionNotFound as exc:
            raise HTTPException(status_code=404, detail="session not found") from exc

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/config")
    def get_config() -> dict:
        return load_config(store)

    @app.put("/config")
    def put_config(body: Dict[str, Any]) -> dict[str, str]:
        try:
            validate_config(deep_merge(DEFAULT_CONFIG, body))
        except InvalidRequest as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not save_config(store, body):
            raise HTTPException(status_code=500, detail="failed to save config")
        log_event(settings.data_dir, CONFIG_UPDATE, {"sections": sorted(body)})
        return {"status": "saved"}

    # ---- sessions ----

    @app.post("/session/start", response_model=StartResponse)
    def start_session(req: StartRequest) -> StartResponse:
        if not rate_limiter.allow("start"):
            raise HTTPException(status_code=429, detail="rate limited")
        try:
            session_id = manager.start(req.prompt, req.mode, req.options)
        except InvalidRequest as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        log_event(settings.data_dir, SESSION_START, {
            "id": session_id,
            "mode": req.mode,
            "prompt_len": len(req.prompt),
        }, request_id=generate_request_id())
        return StartResponse(id=session_id, sessionUrl=f"/session/{session_id}")

    @app.get("/session/{session_id}")
    @app.get("/session/{session_id}/status")
    def session_status(session_id: str) -> dict:
        return _lookup(lambda: manager.status(session_id))

    @app.post("/session/{session_id}/cancel")
    def session_cancel(session_id: str) -> dict[str, str]:
        meta = _lookup(lambda: manager.cancel(session_id))
        log_event(settings.data_dir, SESSION_CANCEL, {"id": session_id})
        return {"status": meta["status"]}

    @app.post("/session/{session_id}/callback")
    async def session_callback(
        session_id: str,
        request: Request,
        x_callback_signature: Optional[str] = Header(default=None),
    ) -> dict[str, str]:
        if not rate_limiter.allow("callback"):
            raise HTTPException(status_code=429, detail="rate limited")
        declared = request.headers.get("content-length")
        if declared is not None:
            try:
                length = int(declared)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail="invalid content-length") from exc
            if length > _MAX_CALLBACK_BYTES:
                raise HTTPException(status_code=413, detail="payload too large")
        raw_body = await request.body()
        try:
            manager.callback(session_id, raw_body, x_callback_signature)
        except SessionNotFound as exc:
            raise HTTPException(status_code=404, detail="session not found") from exc
        except CallbackRejected as exc:
            logger.warning("Callback for %s rejected: %s", session_id, exc)
            raise HTTPException(status_code=403, detail="invalid signature") from exc
        except InvalidRequest as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        log_event(settings.data_dir, SESSION_CALLBACK, {"id": session_id, "bytes": len(raw_body)})
        return {"status": "ok"}

    @app.get("/session/{session_id}/stream")
    def session_stream(session_id: str) -> StreamingResponse:
        _lookup(lambda: manager.status(session_id))
        frames = manager.stream(session_id)

        def _sse() -> Any:
            try:
                for frame in frames:
                    yield f"data: {json.dumps(frame, default=str)}\n\n"
            finally:
                frames.close()

        return StreamingResponse(
            _sse(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    return app
