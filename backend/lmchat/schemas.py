from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(BaseModel):
    error: str


class OkResponse(BaseModel):
    success: bool = True


class ChatRequest(CamelModel):
    message: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    session_id: str | None = None
    project_id: str | None = None
    web_search_enabled: bool = False


class KnowledgeSource(CamelModel):
    document_id: str
    filename: str
    content_preview: str
    rank: float


class WebSource(CamelModel):
    title: str
    url: str
    snippet: str = ""


class ChatResponse(CamelModel):
    message: str
    session_id: str
    sources: list[KnowledgeSource] | None = None
    web_sources: list[WebSource] | None = None


class SearchRequest(CamelModel):
    query: str = Field(min_length=1)


class SearchResponse(CamelModel):
    results: list[WebSource]
    query: str
    timestamp: str


class DirectChatRequest(CamelModel):
    message: str = Field(min_length=1)


class DirectChatResponse(CamelModel):
    message: str
    model: str | None = None
    usage: dict[str, Any] | None = None


class SessionInfo(CamelModel):
    session_id: str
    title: str
    created_at: str
    updated_at: str


class SessionsResponse(CamelModel):
    sessions: list[SessionInfo]


class SessionDeleteRequest(CamelModel):
    session_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)


class Message(CamelModel):
    message_id: str
    session_id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: str


class MessagesResponse(CamelModel):
    messages: list[Message]


class ProjectInfo(CamelModel):
    project_id: str
    name: str
    icon: str
    description: str | None = None
    system_prompt: str | None = None
    created_at: str
    updated_at: str


class ProjectCreateRequest(CamelModel):
    user_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    icon: str | None = None
    description: str | None = None
    system_prompt: str | None = None


class ProjectUpdateRequest(CamelModel):
    user_id: str = Field(min_length=1)
    name: str | None = Field(default=None, min_length=1)
    icon: str | None = None
    description: str | None = None
    system_prompt: str | None = None


class ProjectResponse(CamelModel):
    project: ProjectInfo


class ProjectsResponse(CamelModel):
    projects: list[ProjectInfo]


class DocumentInfo(CamelModel):
    document_id: str
    project_id: str
    filename: str
    original_filename: str
    file_type: str
    file_size: int
    chunk_count: int
    created_at: str


class DocumentResponse(CamelModel):
    document: DocumentInfo


class DocumentsResponse(CamelModel):
    documents: list[DocumentInfo]


class ApiKeyInfo(CamelModel):
    key_id: str
    name: str
    key: str
    last_used_at: str | None = None
    created_at: str


class ApiKeyCreateRequest(CamelModel):
    user_id: str = Field(min_length=1)
    name: str = Field(min_length=1)


class ApiKeyCreated(ApiKeyInfo):
    full_key: str


class ApiKeyCreateResponse(CamelModel):
    key: ApiKeyCreated


class ApiKeysResponse(CamelModel):
    keys: list[ApiKeyInfo]


class ApiKeyDeleteRequest(CamelModel):
    key_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
