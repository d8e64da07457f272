"""
HTTP surface for AI Credit Guard.

Exposes the billed generation endpoints and the balance lookup. Request
bodies are read leniently so that malformed input reaches the orchestrator
and is rejected with its own error codes.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ai_credit_guard.config.loader import ServiceConfig, load_service_config
from ai_credit_guard.core.errors import CreditGuardError
from ai_credit_guard.core.orchestrator import (
    AudioRequest,
    ChatRequest,
    ImageRequest,
    RequestOrchestrator,
    build_orchestrator,
)

logger = logging.getLogger(__name__)

_UNEXPECTED_ERROR_CODES = {
    "/ai-chat": "AI_CHAT_FAILED",
    "/ai-image": "AI_IMAGE_FAILED",
    "/ai-audio": "AI_AUDIO_FAILED",
    "/credits-balance": "BALANCE_FETCH_FAILED",
}


async def _read_body(request: Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _headers(request: Request) -> Dict[str, str]:
    return {key.lower(): value for key, value in request.headers.items()}


def create_app(
    orchestrator: Optional[RequestOrchestrator] = None,
    config: Optional[ServiceConfig] = None,
    allowed_origins: Optional[list] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator (tests inject one with a fake backend)
        config: Service configuration used when no orchestrator is given
        allowed_origins: CORS origins; every origin is allowed when omitted

    Returns:
        Configured FastAPI app
    """
    if orchestrator is None:
        orchestrator = build_orchestrator(config or load_service_config())

    app = FastAPI(title="AI Credit Guard", version="0.1.0")
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins or ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["authorization", "content-type", "x-device-fingerprint"],
    )

    @app.exception_handler(CreditGuardError)
    async def credit_guard_error_handler(request: Request, exc: CreditGuardError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("%s %s failed unexpectedly", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": _UNEXPECTED_ERROR_CODES.get(request.url.path, "INTERNAL_ERROR")},
        )

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/ai-chat")
    async def ai_chat(request: Request):
        body = await _read_body(request)
        chat = ChatRequest(
            mode=body.get("mode"),
            message=body.get("message"),
            idempotency_key=body.get("idempotencyKey"),
            conversation_id=body.get("conversationId"),
            history=body.get("history"),
            deep_dive=body.get("deepDive") is True,
        )
        return await run_in_threadpool(orchestrator.handle_chat, _headers(request), chat)

    @app.post("/ai-image")
    async def ai_image(request: Request):
        body = await _read_body(request)
        image = ImageRequest(
            prompt=body.get("prompt"),
            idempotency_key=body.get("idempotencyKey"),
            conversation_id=body.get("conversationId"),
            quality=body.get("quality"),
        )
        return await run_in_threadpool(orchestrator.handle_image, _headers(request), image)

    @app.post("/ai-audio")
    async def ai_audio(request: Request):
        body = await _read_body(request)
        audio = AudioRequest(
            text=body.get("text"),
            idempotency_key=body.get("idempotencyKey"),
            conversation_id=body.get("conversationId"),
            voice_name=body.get("voiceName"),
        )
        return await run_in_threadpool(orchestrator.handle_audio, _headers(request), audio)

    @app.get("/credits-balance")
    async def credits_balance(request: Request):
        try:
            return await run_in_threadpool(orchestrator.get_balance, _headers(request))
        except CreditGuardError as e:
            logger.error("Balance lookup failed: %s", e)
            raise CreditGuardError(
                "BALANCE_FETCH_FAILED",
                str(e),
                details={"message": str(e)},
                status_code=500,
            ) from e

    return app
