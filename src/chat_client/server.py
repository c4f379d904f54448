"""FastAPI application exposing the conversation core over HTTP."""
from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from .config import load_config
from .errors import ConversationNotFound, InvalidOperation, InvalidUpdate, MessageNotFound
from .history import HistoryController
from .llm import LlamaCppTransport
from .memory import MemoryStore
from .models import Attachment, Conversation, SamplingParams
from .personas import PersonaRegistry
from .session import ResponseSession
from .store import ConversationStore
from .transport import CompletionTransport, HttpCompletionTransport


# -----------------------------
# Pydantic request models
# -----------------------------
class CreateConversationRequest(BaseModel):
    title: Optional[str] = None
    model_id: Optional[str] = None
    persona_id: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=32768)


class UpdateConversationRequest(BaseModel):
    title: Optional[str] = None
    model_id: Optional[str] = None
    persona_id: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=32768)
    pinned_message_id: Optional[str] = None
    unpin: bool = False


class AttachmentModel(BaseModel):
    path: str
    preview_url: str = ""


class SendRequest(BaseModel):
    text: str = Field(default="")
    attachments: List[AttachmentModel] = Field(default_factory=list)
    stream: bool = Field(default=False)


class EditRequest(BaseModel):
    text: str = Field(..., min_length=1)
    stream: bool = Field(default=False)


class RegenerateRequest(BaseModel):
    stream: bool = Field(default=False)


class BranchRequest(BaseModel):
    message_id: str


class MemoryValue(BaseModel):
    value: str = Field(..., min_length=1)


# -----------------------------
# Utilities
# -----------------------------
def _make_transport(cfg: Dict[str, Any]) -> CompletionTransport:
    kind = str((cfg.get("transport") or {}).get("kind") or "http").lower()
    if kind in {"llama", "llama_cpp", "gguf"}:
        return LlamaCppTransport.from_config(cfg)
    return HttpCompletionTransport.from_config(cfg)


def _make_memory(cfg: Dict[str, Any]) -> MemoryStore:
    mem_cfg = cfg.get("memory") or {}
    return MemoryStore(mem_cfg.get("path"))


def _turn_result(session: ResponseSession, conv: Conversation) -> Dict[str, Any]:
    msg = conv.find(session.message_id)
    return {
        "conversation_id": conv.id,
        "state": session.state.value,
        "error": session.error,
        "message": msg.to_dict() if msg else None,
    }


async def _ndjson(store: ConversationStore, session: ResponseSession) -> AsyncIterator[bytes]:
    """One JSON line per update of the target message, ending with the terminal state."""
    queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()

    def _listener(conv: Conversation) -> None:
        if conv.id != session.conversation_id:
            return
        msg = conv.find(session.message_id)
        if msg is not None:
            queue.put_nowait(msg.to_dict())

    unsubscribe = store.subscribe(_listener)
    # updates applied before the subscription are covered by the current snapshot
    _listener(store.get(session.conversation_id))
    waiter = asyncio.ensure_future(session.wait())
    waiter.add_done_callback(lambda _: queue.put_nowait(None))
    try:
        while True:
            item = await queue.get()
            if item is None:
                break
            yield (json.dumps({"message": item}, ensure_ascii=False) + "\n").encode("utf-8")
        final = _turn_result(session, store.get(session.conversation_id))
        yield (json.dumps(final, ensure_ascii=False) + "\n").encode("utf-8")
    finally:
        unsubscribe()
        waiter.cancel()


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    transport: Optional[CompletionTransport] = None,
    memory: Optional[MemoryStore] = None,
    store: Optional[ConversationStore] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    # CORS
    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    # Services
    transport = transport if transport is not None else _make_transport(cfg)
    memory = memory if memory is not None else _make_memory(cfg)
    store = store if store is not None else ConversationStore()
    personas = PersonaRegistry.from_config(cfg)
    stream_cfg = cfg.get("stream") or {}
    defaults = cfg.get("defaults") or {}
    controller = HistoryController(
        store,
        transport,
        memory=memory,
        personas=personas,
        open_tag=stream_cfg.get("reasoning_open_tag") or "<think>",
        close_tag=stream_cfg.get("reasoning_close_tag") or "</think>",
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        await controller.shutdown()

    app = FastAPI(title="Chat Client Core", version="0.1.0", lifespan=lifespan)
    app.state.controller = controller
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _get(conversation_id: str) -> Conversation:
        try:
            return store.get(conversation_id)
        except ConversationNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    async def _respond(session: ResponseSession, stream: bool):
        if stream:
            return StreamingResponse(_ndjson(store, session), media_type="application/x-ndjson")
        await session.wait()
        return _turn_result(session, store.get(session.conversation_id))

    async def _guard(coro):
        try:
            return await coro
        except (ConversationNotFound, MessageNotFound) as e:
            raise HTTPException(status_code=404, detail=str(e))
        except (InvalidOperation, InvalidUpdate) as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "conversations": len(store),
            "memory_entries": len(memory),
            "transport": type(transport).__name__,
        }

    # --------- conversations ----------
    @app.get("/conversations")
    def list_conversations() -> List[Dict[str, Any]]:
        return [
            {"id": c.id, "title": c.title, "messages": len(c.messages), "model_id": c.model_id}
            for c in store.list()
        ]

    @app.post("/conversations")
    async def create_conversation(req: CreateConversationRequest) -> Dict[str, Any]:
        conv = controller.create_conversation(
            title=req.title,
            model_id=req.model_id or defaults.get("model_id"),
            persona_id=req.persona_id or defaults.get("persona_id"),
            temperature=req.temperature if req.temperature is not None else defaults.get("temperature"),
            max_tokens=req.max_tokens if req.max_tokens is not None else defaults.get("max_tokens"),
        )
        return conv.to_dict()

    @app.get("/conversations/{conversation_id}")
    def get_conversation(conversation_id: str) -> Dict[str, Any]:
        return _get(conversation_id).to_dict()

    @app.patch("/conversations/{conversation_id}")
    async def update_conversation(conversation_id: str, req: UpdateConversationRequest) -> Dict[str, Any]:
        conv = _get(conversation_id)
        patch: Dict[str, Any] = {}
        for name in ("title", "model_id", "persona_id"):
            value = getattr(req, name)
            if value:
                patch[name] = value
        if req.temperature is not None or req.max_tokens is not None:
            patch["sampling"] = SamplingParams(
                temperature=req.temperature if req.temperature is not None else conv.sampling.temperature,
                max_tokens=req.max_tokens if req.max_tokens is not None else conv.sampling.max_tokens,
            )
        if req.unpin:
            patch["pinned_message_id"] = None
        elif req.pinned_message_id:
            patch["pinned_message_id"] = req.pinned_message_id
        try:
            return store.apply_update(conversation_id, patch).to_dict()
        except InvalidUpdate as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.delete("/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str) -> Dict[str, Any]:
        if not await controller.delete_conversation(conversation_id):
            raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id!r}")
        return {"deleted": conversation_id}

    @app.post("/conversations/{conversation_id}/branch")
    async def branch(conversation_id: str, req: BranchRequest) -> Dict[str, Any]:
        try:
            return controller.branch(conversation_id, req.message_id).to_dict()
        except (ConversationNotFound, MessageNotFound) as e:
            raise HTTPException(status_code=404, detail=str(e))

    # --------- turns ----------
    @app.post("/conversations/{conversation_id}/messages")
    async def send(conversation_id: str, req: SendRequest):
        attachments = [Attachment(path=a.path, preview_url=a.preview_url) for a in req.attachments]
        session = await _guard(controller.send(conversation_id, req.text, attachments))
        return await _respond(session, req.stream)

    @app.post("/conversations/{conversation_id}/messages/{message_id}/edit")
    async def edit(conversation_id: str, message_id: str, req: EditRequest):
        session = await _guard(controller.edit_and_resubmit(conversation_id, message_id, req.text))
        return await _respond(session, req.stream)

    @app.post("/conversations/{conversation_id}/regenerate")
    async def regenerate(conversation_id: str, req: RegenerateRequest):
        session = await _guard(controller.regenerate(conversation_id))
        return await _respond(session, req.stream)

    @app.post("/conversations/{conversation_id}/stop")
    async def stop(conversation_id: str) -> Dict[str, Any]:
        _get(conversation_id)
        return {"stopped": await controller.stop(conversation_id)}

    # --------- memory ----------
    @app.get("/memory")
    def get_memory() -> Dict[str, str]:
        return memory.to_dict()

    @app.put("/memory/{key}")
    def put_memory(key: str, req: MemoryValue) -> Dict[str, str]:
        try:
            stored = memory.set(key, req.value)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"key": stored, "value": memory.get(stored) or ""}

    @app.delete("/memory/{key}")
    def delete_memory(key: str) -> Dict[str, Any]:
        if not memory.delete(key):
            raise HTTPException(status_code=404, detail=f"memory key not found: {key!r}")
        return {"deleted": key}

    # --------- personas ----------
    @app.get("/personas")
    def list_personas() -> List[Dict[str, Any]]:
        return [p.to_dict() for p in personas.all()]

    return app
