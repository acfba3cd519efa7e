"""FastAPI application: quota-guarded chat with model fallback and session memory."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import get_version
from .config import load_config
from .dispatch import CompletionBackend, ModelCatalog, ModelDispatcher
from .errors import AdmissionDenied, GatewayError
from .gateway import DEFAULT_PERSONA, Attachment, ChatInput, ConversationGateway
from .identity import client_origin
from .llm import create_from_config as create_provider
from .memory import MemoryAssembler, MemoryPolicy
from .plans import PlanCatalog
from .quota import QuotaLedger
from .sessions import SessionStore
from .store import KeyValueStore
from .store import create_from_config as create_store

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


class IdentityHints(_CamelModel):
    email: Optional[str] = None
    fingerprint_id: Optional[str] = Field(default=None, alias="fingerprintID")


class HistoryTurn(_CamelModel):
    role: str
    content: Union[str, List[Dict[str, Any]]]


class AttachmentIn(_CamelModel):
    name: str = "attachment"
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")
    data: str


class ChatRequest(_CamelModel):
    message: str = Field(default="")
    history: List[HistoryTurn] = Field(default_factory=list)
    identity_hints: IdentityHints = Field(default_factory=IdentityHints, alias="identityHints")
    session_id: Optional[Union[int, str]] = Field(default=None, alias="sessionId")
    model: Optional[str] = None
    attachment: Optional[AttachmentIn] = None
    # Flat fields sent by older clients
    email: Optional[str] = None
    fingerprint_id: Optional[str] = Field(default=None, alias="fingerprintID")


class ChatResponse(_CamelModel):
    response: str
    session_id: Optional[Union[int, str]] = Field(default=None, alias="sessionId")


class HistoryRequest(_CamelModel):
    email: Optional[str] = None


class SessionRequest(_CamelModel):
    email: Optional[str] = None
    session_id: Optional[Union[int, str]] = Field(default=None, alias="sessionId")


class FeedbackRequest(SessionRequest):
    message_content: Optional[str] = Field(default=None, alias="messageContent")
    feedback: Optional[str] = None


# -----------------------------
# Utilities
# -----------------------------
def _get_persona(cfg: Dict[str, Any]) -> str:
    persona = (cfg.get("persona") or {}).get("system_prompt") or DEFAULT_PERSONA
    return str(persona).strip()


def _to_input(req: ChatRequest, request: Request) -> ChatInput:
    hints = req.identity_hints
    peer = request.client.host if request.client else None
    attachment = None
    if req.attachment is not None and req.attachment.data:
        attachment = Attachment(req.attachment.name, req.attachment.mime_type, req.attachment.data)
    return ChatInput(
        message=req.message,
        history=[t.model_dump() for t in req.history],
        origin=client_origin(request.headers, peer),
        signature=request.headers.get("user-agent"),
        fingerprint=hints.fingerprint_id or req.fingerprint_id or request.headers.get("x-fingerprint-id"),
        email=hints.email or req.email,
        session_id=req.session_id,
        model=req.model,
        attachment=attachment,
    )


def build_gateway(
    cfg: Dict[str, Any],
    *,
    store: Optional[KeyValueStore] = None,
    backend: Optional[CompletionBackend] = None,
    clock: Callable[[], float] = time.time,
) -> ConversationGateway:
    """Wire the collaborators described by ``cfg``."""
    store = store if store is not None else create_store(cfg)
    backend = backend if backend is not None else create_provider(cfg)
    timeout = float((cfg.get("provider") or {}).get("timeout", 30.0))

    catalog = ModelCatalog.from_config(cfg)
    dispatcher = ModelDispatcher(backend, default_timeout=timeout)
    sessions = SessionStore(store, clock=clock)
    mem_cfg = cfg.get("memory") or {}
    memory = MemoryAssembler(
        sessions,
        dispatcher,
        catalog.text,
        policy=MemoryPolicy(
            max_sessions=int(mem_cfg.get("max_sessions", 3)),
            transcript_chars=int(mem_cfg.get("transcript_chars", 12000)),
            summary_chars=int(mem_cfg.get("summary_chars", 400)),
        ),
    )
    return ConversationGateway(
        sessions=sessions,
        ledger=QuotaLedger(store, clock=clock),
        plans=PlanCatalog.from_config(cfg),
        dispatcher=dispatcher,
        catalog=catalog,
        memory=memory,
        persona=_get_persona(cfg),
    )


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    store: Optional[KeyValueStore] = None,
    backend: Optional[CompletionBackend] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    cfg = load_config(config_path)
    gateway = build_gateway(cfg, store=store, backend=backend, clock=clock)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    app = FastAPI(title="Chat Gateway", version=get_version())
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.gateway = gateway

    @app.exception_handler(AdmissionDenied)
    def _admission_denied(request: Request, exc: AdmissionDenied) -> JSONResponse:
        return JSONResponse({"error": exc.message, "retryAfter": exc.retry_after}, status_code=429)

    @app.exception_handler(GatewayError)
    def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(HTTPException)
    def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = (exc.errors() or [{}])[0]
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        detail = f"{where}: {first.get('msg')}" if where else str(first.get("msg") or "malformed body")
        return JSONResponse({"error": f"Invalid request ({detail})."}, status_code=422)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "store": type(gateway.sessions.store).__name__,
            "text_models": list(gateway.catalog.text),
            "vision_models": list(gateway.catalog.vision),
            "plans": gateway.plans.names(),
            "version": get_version(),
        }

    @app.post("/chat", response_model=ChatResponse, response_model_by_alias=True)
    def chat(req: ChatRequest, request: Request):
        if not (req.message or "").strip():
            raise HTTPException(status_code=400, detail="Message cannot be empty.")
        result = gateway.handle(_to_input(req, request))
        return ChatResponse(response=result.content, session_id=result.session_id)

    @app.post("/history")
    def history(req: HistoryRequest) -> List[Dict[str, Any]]:
        if not req.email:
            raise HTTPException(status_code=400, detail="Email is required.")
        return gateway.history(req.email)

    @app.post("/get-session")
    def get_session(req: SessionRequest) -> Dict[str, Any]:
        if not req.email or req.session_id is None:
            raise HTTPException(status_code=400, detail="Email and sessionId are required.")
        return gateway.get_session(req.email, req.session_id)

    @app.post("/delete-session")
    def delete_session(req: SessionRequest) -> Dict[str, Any]:
        if not req.email or req.session_id is None:
            raise HTTPException(status_code=400, detail="Email and sessionId are required.")
        gateway.delete_session(req.email, req.session_id)
        return {"success": True}

    @app.post("/feedback")
    def feedback(req: FeedbackRequest) -> Dict[str, Any]:
        if not req.email or req.session_id is None or req.message_content is None:
            return {"success": False}
        ok = gateway.record_feedback(req.email, req.session_id, req.message_content, req.feedback)
        return {"success": ok}

    @app.get("/user-count")
    def user_count() -> Dict[str, Any]:
        return {"success": True, "count": gateway.account_count()}

    return app
