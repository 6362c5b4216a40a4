from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import api_keys, app_db
from .api_keys import ApiKeyError
from .assembler import PromptAssembler
from .config import ChatConfig
from .documents import DocumentError, prepare_document
from .lmstudio import InferenceClient, LMStudioError
from .logging_utils import get_logger
from .retriever import ContextRetriever, RetrievalError
from .schemas import (
    ApiKeyCreated,
    ApiKeyCreateRequest,
    ApiKeyCreateResponse,
    ApiKeyDeleteRequest,
    ApiKeyInfo,
    ApiKeysResponse,
    ChatRequest,
    ChatResponse,
    DirectChatRequest,
    DirectChatResponse,
    DocumentInfo,
    DocumentResponse,
    DocumentsResponse,
    ErrorResponse,
    KnowledgeSource,
    MessagesResponse,
    OkResponse,
    ProjectCreateRequest,
    ProjectInfo,
    ProjectResponse,
    ProjectsResponse,
    ProjectUpdateRequest,
    SearchRequest,
    SearchResponse,
    SessionDeleteRequest,
    SessionsResponse,
    WebSource,
)
from .web_search import WebSearchGateway

log = get_logger(__name__)

GENERIC_ERROR = "Internal server error"
SESSION_TITLE_CHARS = 50

config = ChatConfig.from_env()
inference = InferenceClient(config)
web_search = WebSearchGateway(config)
retriever = ContextRetriever(app_db, top_k=config.rag_top_k)
assembler = PromptAssembler(web_search, retriever)

app = FastAPI(title="lmchat-backend")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def _startup() -> None:
    app_db.init_db()
    log.info("lmchat backend ready (LM Studio at %s, web providers: %s)", config.backend_url, web_search.provider_names)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "header"))
        msg = str(err.get("msg") or "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "Invalid request"


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    body = ErrorResponse(error=str(exc.detail)).model_dump()
    return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content=ErrorResponse(error=_validation_message(exc)).model_dump())


def _openai_error(status_code: int, message: str, error_type: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"message": message, "type": error_type}})


def _session_title(message: str) -> str:
    text = message.strip()
    return text if len(text) <= SESSION_TITLE_CHARS else text[:SESSION_TITLE_CHARS] + "..."


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "lmstudio_base_url": config.backend_url,
        "default_model": config.default_model,
        "web_search_providers": web_search.provider_names,
    }


@app.post("/api/chat", response_model=ChatResponse, response_model_exclude_none=True)
async def chat(req: ChatRequest) -> ChatResponse:
    try:
        if req.session_id:
            session = app_db.get_session(req.session_id)
            if not session or session["user_id"] != req.user_id:
                raise HTTPException(status_code=404, detail="Session not found")
            session_id = req.session_id
        else:
            session_id = app_db.create_session(user_id=req.user_id, title=_session_title(req.message))["session_id"]

        app_db.insert_message(session_id=session_id, user_id=req.user_id, role="user", content=req.message)
        history = app_db.list_messages(session_id)
        project = app_db.get_project(req.project_id, req.user_id) if req.project_id else None
    except sqlite3.Error as e:
        log.exception("Chat persistence error")
        raise HTTPException(status_code=500, detail=GENERIC_ERROR) from e

    try:
        assembled = await assembler.assemble(
            history,
            user_id=req.user_id,
            project=project,
            project_id=req.project_id,
            web_search_enabled=req.web_search_enabled,
        )
    except RetrievalError as e:
        log.exception("Knowledge base retrieval failed")
        raise HTTPException(status_code=500, detail=GENERIC_ERROR) from e

    try:
        completion = await inference.chat_completion(assembled.messages())
    except LMStudioError as e:
        log.exception("LM Studio error")
        raise HTTPException(status_code=502, detail=str(e)) from e

    try:
        app_db.insert_message(session_id=session_id, user_id=req.user_id, role="assistant", content=completion.content)
    except sqlite3.Error as e:
        log.exception("Failed to store assistant message")
        raise HTTPException(status_code=500, detail=GENERIC_ERROR) from e

    sources = [
        KnowledgeSource(document_id=s.document_id, filename=s.filename, content_preview=s.content_preview, rank=s.rank)
        for s in assembled.knowledge_sources
    ]
    web_sources = [WebSource(**r.to_dict()) for r in assembled.web_sources]
    return ChatResponse(
        message=completion.content,
        session_id=session_id,
        sources=sources if req.project_id else None,
        web_sources=web_sources if req.web_search_enabled else None,
    )


@app.post("/api/search", response_model=SearchResponse)
async def search(req: SearchRequest) -> SearchResponse:
    results = await web_search.search(req.query)
    return SearchResponse(
        results=[WebSource(**r.to_dict()) for r in results],
        query=req.query,
        timestamp=_utc_now(),
    )


@app.post("/api/test-chat", response_model=DirectChatResponse, response_model_exclude_none=True)
async def test_chat(req: DirectChatRequest) -> DirectChatResponse:
    try:
        completion = await inference.chat_completion([{"role": "user", "content": req.message}])
    except LMStudioError as e:
        log.exception("LM Studio error")
        raise HTTPException(status_code=502, detail=str(e)) from e
    return DirectChatResponse(message=completion.content, model=completion.model, usage=completion.usage)


@app.post("/v1/chat/completions")
async def openai_chat_completions(request: Request) -> JSONResponse:
    try:
        api_keys.authenticate_bearer(request.headers.get("authorization"))
    except ApiKeyError as e:
        return _openai_error(401, str(e), "invalid_request_error")
    except sqlite3.Error:
        log.exception("API key lookup failed")
        return _openai_error(500, GENERIC_ERROR, "api_error")

    try:
        body = await request.json()
    except ValueError:
        return _openai_error(400, "Request body must be valid JSON", "invalid_request_error")
    if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
        return _openai_error(400, "messages is required and must be an array", "invalid_request_error")

    try:
        data = await inference.forward_completion(body)
    except ValueError as e:
        return _openai_error(400, str(e), "invalid_request_error")
    except LMStudioError as e:
        log.exception("LM Studio error (OpenAI-compatible endpoint)")
        return _openai_error(502, str(e), "api_error")
    return JSONResponse(content=data)


@app.get("/api/sessions", response_model=SessionsResponse)
def sessions_list(user_id: str = Query(alias="userId", min_length=1)) -> SessionsResponse:
    return SessionsResponse(sessions=app_db.list_sessions(user_id=user_id))


@app.delete("/api/sessions", response_model=OkResponse)
def sessions_delete(req: SessionDeleteRequest) -> OkResponse:
    app_db.delete_session(session_id=req.session_id, user_id=req.user_id)
    return OkResponse()


@app.get("/api/messages", response_model=MessagesResponse)
def messages_list(session_id: str = Query(alias="sessionId", min_length=1)) -> MessagesResponse:
    return MessagesResponse(messages=app_db.list_messages(session_id))


@app.get("/api/projects", response_model=ProjectsResponse)
def projects_list(user_id: str = Query(alias="userId", min_length=1)) -> ProjectsResponse:
    return ProjectsResponse(projects=app_db.list_projects(user_id))


@app.post("/api/projects", response_model=ProjectResponse, status_code=201)
def projects_create(req: ProjectCreateRequest) -> ProjectResponse:
    rec = app_db.create_project(
        user_id=req.user_id,
        name=req.name.strip(),
        icon=req.icon,
        description=req.description,
        system_prompt=req.system_prompt,
    )
    return ProjectResponse(project=ProjectInfo(**rec))


def _require_project(project_id: str, user_id: str) -> dict[str, Any]:
    project = app_db.get_project(project_id, user_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


@app.get("/api/projects/{project_id}", response_model=ProjectResponse)
def projects_get(project_id: str, user_id: str = Query(alias="userId", min_length=1)) -> ProjectResponse:
    return ProjectResponse(project=ProjectInfo(**_require_project(project_id, user_id)))


@app.put("/api/projects/{project_id}", response_model=ProjectResponse)
def projects_update(project_id: str, req: ProjectUpdateRequest) -> ProjectResponse:
    rec = app_db.update_project(
        project_id=project_id,
        user_id=req.user_id,
        name=req.name,
        icon=req.icon,
        description=req.description,
        system_prompt=req.system_prompt,
    )
    if not rec:
        raise HTTPException(status_code=404, detail="Project not found")
    return ProjectResponse(project=ProjectInfo(**rec))


@app.delete("/api/projects/{project_id}", response_model=OkResponse)
def projects_delete(project_id: str, user_id: str = Query(alias="userId", min_length=1)) -> OkResponse:
    app_db.delete_project(project_id=project_id, user_id=user_id)
    return OkResponse()


@app.get("/api/projects/{project_id}/documents", response_model=DocumentsResponse)
def documents_list(project_id: str, user_id: str = Query(alias="userId", min_length=1)) -> DocumentsResponse:
    return DocumentsResponse(documents=app_db.list_project_documents(project_id, user_id))


@app.post("/api/projects/{project_id}/documents", response_model=DocumentResponse, status_code=201)
async def documents_upload(
    project_id: str,
    user_id: str = Form(alias="userId", min_length=1),
    file: UploadFile = File(...),
) -> DocumentResponse:
    _require_project(project_id, user_id)
    data = await file.read()
    try:
        prepared = prepare_document(str(file.filename or ""), data)
    except DocumentError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    rec = app_db.create_document_with_chunks(
        project_id=project_id,
        user_id=user_id,
        filename=prepared.filename,
        original_filename=prepared.original_filename,
        file_type=prepared.file_type,
        file_size=prepared.file_size,
        extracted_text=prepared.extracted_text,
        chunks=prepared.chunks,
    )
    return DocumentResponse(document=DocumentInfo(**rec))


@app.delete("/api/projects/{project_id}/documents", response_model=OkResponse)
def documents_delete(
    project_id: str,
    user_id: str = Query(alias="userId", min_length=1),
    document_id: str = Query(alias="documentId", min_length=1),
) -> OkResponse:
    doc = app_db.get_document(document_id, user_id)
    if not doc or doc["project_id"] != project_id:
        raise HTTPException(status_code=404, detail="Document not found")
    app_db.delete_document(document_id=document_id, user_id=user_id)
    return OkResponse()


def _key_info(rec: dict[str, Any]) -> dict[str, Any]:
    return {
        "key_id": rec["key_id"],
        "name": rec["name"],
        "key": api_keys.mask_key(str(rec["key_suffix"])),
        "last_used_at": rec.get("last_used_at"),
        "created_at": rec["created_at"],
    }


@app.get("/api/keys", response_model=ApiKeysResponse)
def keys_list(user_id: str = Query(alias="userId", min_length=1)) -> ApiKeysResponse:
    return ApiKeysResponse(keys=[ApiKeyInfo(**_key_info(r)) for r in app_db.list_api_keys(user_id)])


@app.post("/api/keys", response_model=ApiKeyCreateResponse)
def keys_create(req: ApiKeyCreateRequest) -> ApiKeyCreateResponse:
    issued = api_keys.issue_api_key(user_id=req.user_id, name=req.name.strip())
    return ApiKeyCreateResponse(key=ApiKeyCreated(**_key_info(issued.record), full_key=issued.full_key))


@app.delete("/api/keys", response_model=OkResponse)
def keys_delete(req: ApiKeyDeleteRequest) -> OkResponse:
    app_db.delete_api_key(key_id=req.key_id, user_id=req.user_id)
    return OkResponse()
