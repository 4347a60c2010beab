from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import CONFIG
from .conversations import ConversationContext, handle_utterance
from .errors import InvalidInputError, LookupFailedError, NotFoundError
from .kakao import simple_text_response
from .kv_client import get_kv_client
from .prompts import SYSTEM_ERROR_MESSAGE
from .reference_table import ReferenceTable, RemoteReferenceTable, ReferenceStore, publish_reference_store
from .routes import growth as growth_routes
from .routes.growth import reference_dependency
from .schemas import SkillRequest
from .sessions import SessionStore, create_session_store

logger = logging.getLogger(__name__)

INVALID_SKILL_REQUEST = "Invalid request: userKey or utterance is missing."

_SESSION_STORE: Optional[SessionStore] = None


def load_reference_store() -> ReferenceStore:
    if CONFIG.reference_backend == "kv":
        logger.info("using KV reference table")
        return RemoteReferenceTable(get_kv_client())
    return ReferenceTable.load_json(CONFIG.resolved_lms_data_path)


def get_session_store() -> SessionStore:
    global _SESSION_STORE
    if _SESSION_STORE is None:
        _SESSION_STORE = create_session_store()
        logger.info("session store ready", extra={"backend": CONFIG.session_backend})
    return _SESSION_STORE


def get_conversation_context(
    store: SessionStore = Depends(get_session_store),
    reference=Depends(reference_dependency),
) -> ConversationContext:
    return ConversationContext(store=store, reference=reference, narrate_reports=CONFIG.narrate_reports)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    # A missing or malformed table must stop startup, not the first request.
    publish_reference_store(load_reference_store())
    get_session_store()
    yield


app = FastAPI(
    title="Growth Percentile Bot API",
    version="0.1.0",
    description="Kakao skill webhook that turns a child's measurements into growth percentiles",
    lifespan=lifespan,
)

if CONFIG.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CONFIG.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=False,
    )

app.include_router(growth_routes.router)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={
            "error": "not_found",
            "detail": str(exc),
            "age_months": exc.age_months,
            "measurement_type": exc.measurement_type,
        },
    )


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": "invalid_input", "field": exc.field, "detail": str(exc)})


@app.exception_handler(LookupFailedError)
async def lookup_failed_handler(request: Request, exc: LookupFailedError) -> JSONResponse:
    logger.warning("reference lookup failed", extra={"path": request.url.path, "error": str(exc)})
    return JSONResponse(status_code=503, content={"error": "lookup_failed", "detail": str(exc)})


@app.get("/")
async def root() -> dict:
    return {"message": "Growth percentile bot ready"}


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


async def _parse_skill_request(request: Request) -> Optional[SkillRequest]:
    try:
        body: Any = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(body, dict):
        return None
    try:
        return SkillRequest.model_validate(body)
    except ValidationError:
        return None


@app.post("/api/skill")
@app.post("/skill", include_in_schema=False)
async def kakao_skill(
    request: Request,
    ctx: ConversationContext = Depends(get_conversation_context),
) -> JSONResponse:
    """Kakao i Open Builder skill endpoint: one utterance in, one simpleText out."""

    skill = await _parse_skill_request(request)
    if skill is None or not skill.user_key or not skill.utterance:
        return JSONResponse(status_code=400, content={"error": INVALID_SKILL_REQUEST})

    user_key = skill.user_key
    logger.info("skill request", extra={"method": "POST", "path": request.url.path, "user_key": user_key})
    try:
        reply = await handle_utterance(ctx, user_key, skill.utterance)
    except Exception as exc:
        logger.exception("skill handler failed", extra={"user_key": user_key}, exc_info=exc)
        return JSONResponse(status_code=500, content=simple_text_response(SYSTEM_ERROR_MESSAGE))
    payload: Dict[str, Any] = simple_text_response(reply)
    return JSONResponse(content=payload)
