from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from . import chunk_search
from .config import APP_DB_PATH
from .logging_utils import get_logger

log = get_logger(__name__)

DEFAULT_PROJECT_ICON = "📁"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _connect(db_path: Path | None = None) -> sqlite3.Connection:
    path = db_path or APP_DB_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db() -> None:
    conn = _connect()
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS chat_sessions (
              session_id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              title TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chat_messages (
              message_id TEXT PRIMARY KEY,
              session_id TEXT NOT NULL,
              user_id TEXT NOT NULL,
              role TEXT NOT NULL CHECK(role IN ('user','assistant')),
              content TEXT NOT NULL,
              created_at TEXT NOT NULL,
              FOREIGN KEY(session_id) REFERENCES chat_sessions(session_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS projects (
              project_id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              name TEXT NOT NULL,
              icon TEXT NOT NULL,
              description TEXT,
              system_prompt TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
              document_id TEXT PRIMARY KEY,
              project_id TEXT NOT NULL,
              user_id TEXT NOT NULL,
              filename TEXT NOT NULL,
              original_filename TEXT NOT NULL,
              file_type TEXT NOT NULL,
              file_size INTEGER NOT NULL,
              extracted_text TEXT NOT NULL,
              chunk_count INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              FOREIGN KEY(project_id) REFERENCES projects(project_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS document_chunks (
              chunk_id TEXT PRIMARY KEY,
              document_id TEXT NOT NULL,
              project_id TEXT NOT NULL,
              chunk_index INTEGER NOT NULL,
              content TEXT NOT NULL,
              token_count INTEGER NOT NULL,
              term_count INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              FOREIGN KEY(document_id) REFERENCES documents(document_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS chunk_terms (
              chunk_id TEXT NOT NULL,
              project_id TEXT NOT NULL,
              term TEXT NOT NULL,
              tf INTEGER NOT NULL,
              PRIMARY KEY (chunk_id, term),
              FOREIGN KEY(chunk_id) REFERENCES document_chunks(chunk_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS api_keys (
              key_id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              name TEXT NOT NULL,
              key_hash TEXT NOT NULL UNIQUE,
              key_suffix TEXT NOT NULL,
              last_used_at TEXT,
              created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_user ON chat_sessions(user_id, updated_at);
            CREATE INDEX IF NOT EXISTS idx_messages_session_created ON chat_messages(session_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_projects_user ON projects(user_id);
            CREATE INDEX IF NOT EXISTS idx_documents_project ON documents(project_id);
            CREATE INDEX IF NOT EXISTS idx_chunks_project ON document_chunks(project_id);
            CREATE INDEX IF NOT EXISTS idx_chunk_terms_lookup ON chunk_terms(project_id, term);
            CREATE INDEX IF NOT EXISTS idx_apikeys_user ON api_keys(user_id);
            """
        )
        _migrate_db(conn)
        conn.commit()
    finally:
        conn.close()


def _migrate_db(conn: sqlite3.Connection) -> None:
    # document_chunks.term_count (BM25 length) was added after the initial schema.
    cols = [r["name"] for r in conn.execute("PRAGMA table_info(document_chunks)").fetchall()]
    if "term_count" not in cols:
        conn.execute("ALTER TABLE document_chunks ADD COLUMN term_count INTEGER NOT NULL DEFAULT 0")
        conn.execute(
            """
            UPDATE document_chunks
            SET term_count = COALESCE((SELECT SUM(tf) FROM chunk_terms t WHERE t.chunk_id = document_chunks.chunk_id), 0)
            """
        )


# Sessions and messages


def create_session(*, user_id: str, title: str) -> dict[str, Any]:
    session_id = str(uuid.uuid4())
    now = _utc_now()

    conn = _connect()
    try:
        conn.execute(
            "INSERT INTO chat_sessions(session_id, user_id, title, created_at, updated_at) VALUES (?,?,?,?,?)",
            (session_id, user_id, title, now, now),
        )
        conn.commit()
    finally:
        conn.close()

    return {"session_id": session_id, "user_id": user_id, "title": title, "created_at": now, "updated_at": now}


def get_session(session_id: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            "SELECT session_id, user_id, title, created_at, updated_at FROM chat_sessions WHERE session_id = ?",
            (session_id,),
        ).fetchone()
    finally:
        conn.close()
    return dict(row) if row else None


def list_sessions(*, user_id: str, limit: int = 100) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            """
            SELECT session_id, user_id, title, created_at, updated_at
            FROM chat_sessions
            WHERE user_id = ?
            ORDER BY updated_at DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


def delete_session(*, session_id: str, user_id: str) -> bool:
    conn = _connect()
    try:
        cur = conn.execute("DELETE FROM chat_sessions WHERE session_id = ? AND user_id = ?", (session_id, user_id))
        conn.commit()
        return int(cur.rowcount or 0) > 0
    finally:
        conn.close()


def insert_message(*, session_id: str, user_id: str, role: str, content: str) -> dict[str, Any]:
    message_id = str(uuid.uuid4())
    created_at = _utc_now()

    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO chat_messages(message_id, session_id, user_id, role, content, created_at)
            VALUES (?,?,?,?,?,?)
            """,
            (message_id, session_id, user_id, role, content, created_at),
        )
        conn.execute("UPDATE chat_sessions SET updated_at = ? WHERE session_id = ?", (created_at, session_id))
        conn.commit()
    finally:
        conn.close()

    return {
        "message_id": message_id,
        "session_id": session_id,
        "user_id": user_id,
        "role": role,
        "content": content,
        "created_at": created_at,
    }


def list_messages(session_id: str) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            """
            SELECT message_id, session_id, user_id, role, content, created_at
            FROM chat_messages
            WHERE session_id = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (session_id,),
        ).fetchall()
    finally:
        conn.close()
    return [dict(r) for r in rows]


# Projects

_PROJECT_COLUMNS = "project_id, user_id, name, icon, description, system_prompt, created_at, updated_at"


def create_project(
    *,
    user_id: str,
    name: str,
    icon: str | None = None,
    description: str | None = None,
    system_prompt: str | None = None,
) -> dict[str, Any]:
    project_id = str(uuid.uuid4())
    now = _utc_now()
    icon = icon or DEFAULT_PROJECT_ICON
    conn = _connect()
    try:
        conn.execute(
            f"INSERT INTO projects({_PROJECT_COLUMNS}) VALUES (?,?,?,?,?,?,?,?)",
            (project_id, user_id, name, icon, description, system_prompt, now, now),
        )
        conn.commit()
    finally:
        conn.close()
    return {
        "project_id": project_id,
        "user_id": user_id,
        "name": name,
        "icon": icon,
        "description": description,
        "system_prompt": system_prompt,
        "created_at": now,
        "updated_at": now,
    }


def get_project(project_id: str, user_id: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            f"SELECT {_PROJECT_COLUMNS} FROM projects WHERE project_id = ? AND user_id = ?",
            (project_id, user_id),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def list_projects(user_id: str) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            f"SELECT {_PROJECT_COLUMNS} FROM projects WHERE user_id = ? ORDER BY updated_at DESC",
            (user_id,),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def update_project(
    *,
    project_id: str,
    user_id: str,
    name: str | None = None,
    icon: str | None = None,
    description: str | None = None,
    system_prompt: str | None = None,
) -> dict[str, Any] | None:
    updates: list[str] = []
    params: list[Any] = []
    if name is not None:
        updates.append("name = ?")
        params.append(name)
    if icon is not None:
        updates.append("icon = ?")
        params.append(icon)
    if description is not None:
        updates.append("description = ?")
        params.append(description)
    if system_prompt is not None:
        updates.append("system_prompt = ?")
        params.append(system_prompt)
    if not updates:
        return get_project(project_id, user_id)

    updates.append("updated_at = ?")
    params.append(_utc_now())
    params.extend([project_id, user_id])

    conn = _connect()
    try:
        conn.execute(f"UPDATE projects SET {', '.join(updates)} WHERE project_id = ? AND user_id = ?", params)
        conn.commit()
    finally:
        conn.close()
    return get_project(project_id, user_id)


def delete_project(*, project_id: str, user_id: str) -> bool:
    conn = _connect()
    try:
        cur = conn.execute("DELETE FROM projects WHERE project_id = ? AND user_id = ?", (project_id, user_id))
        conn.commit()
        return int(cur.rowcount or 0) > 0
    finally:
        conn.close()


# Documents and chunks

_DOCUMENT_COLUMNS = (
    "document_id, project_id, user_id, filename, original_filename, file_type, file_size, chunk_count, created_at"
)


def create_document_with_chunks(
    *,
    project_id: str,
    user_id: str,
    filename: str,
    original_filename: str,
    file_type: str,
    file_size: int,
    extracted_text: str,
    chunks: list[str],
) -> dict[str, Any]:
    document_id = str(uuid.uuid4())
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO documents(document_id, project_id, user_id, filename, original_filename,
                                  file_type, file_size, extracted_text, chunk_count, created_at)
            VALUES (?,?,?,?,?,?,?,?,?,?)
            """,
            (
                document_id,
                project_id,
                user_id,
                filename,
                original_filename,
                file_type,
                int(file_size),
                extracted_text,
                len(chunks),
                now,
            ),
        )
        for idx, content in enumerate(chunks):
            chunk_id = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO document_chunks(
                  chunk_id, document_id, project_id, chunk_index, content, token_count, term_count, created_at
                )
                VALUES (?,?,?,?,?,?,?,?)
                """,
                (
                    chunk_id,
                    document_id,
                    project_id,
                    idx,
                    content,
                    len(content.split()),
                    len(chunk_search.tokenize(content)),
                    now,
                ),
            )
            chunk_search.index_chunk(conn, chunk_id=chunk_id, project_id=project_id, content=content)
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()

    log.info("Stored document %s (%s) with %d chunks", document_id, original_filename, len(chunks))
    return {
        "document_id": document_id,
        "project_id": project_id,
        "user_id": user_id,
        "filename": filename,
        "original_filename": original_filename,
        "file_type": file_type,
        "file_size": int(file_size),
        "chunk_count": len(chunks),
        "created_at": now,
    }


def list_project_documents(project_id: str, user_id: str) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            f"""
            SELECT {_DOCUMENT_COLUMNS}
            FROM documents
            WHERE project_id = ? AND user_id = ?
            ORDER BY created_at DESC
            """,
            (project_id, user_id),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def get_document(document_id: str, user_id: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE document_id = ? AND user_id = ?",
            (document_id, user_id),
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def delete_document(*, document_id: str, user_id: str) -> bool:
    conn = _connect()
    try:
        cur = conn.execute("DELETE FROM documents WHERE document_id = ? AND user_id = ?", (document_id, user_id))
        conn.commit()
        return int(cur.rowcount or 0) > 0
    finally:
        conn.close()


def search_document_chunks(project_id: str, query: str, limit: int = 5) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        return chunk_search.rank_chunks(conn, project_id, query, limit)
    finally:
        conn.close()


# API keys

_API_KEY_COLUMNS = "key_id, user_id, name, key_suffix, last_used_at, created_at"


def create_api_key(*, user_id: str, name: str, key_hash: str, key_suffix: str) -> dict[str, Any]:
    key_id = str(uuid.uuid4())
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO api_keys(key_id, user_id, name, key_hash, key_suffix, last_used_at, created_at)
            VALUES (?,?,?,?,?,?,?)
            """,
            (key_id, user_id, name, key_hash, key_suffix, None, now),
        )
        conn.commit()
    finally:
        conn.close()
    return {
        "key_id": key_id,
        "user_id": user_id,
        "name": name,
        "key_suffix": key_suffix,
        "last_used_at": None,
        "created_at": now,
    }


def list_api_keys(user_id: str) -> list[dict[str, Any]]:
    conn = _connect()
    try:
        rows = conn.execute(
            f"SELECT {_API_KEY_COLUMNS} FROM api_keys WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        ).fetchall()
        return [dict(r) for r in rows]
    finally:
        conn.close()


def get_api_key_by_hash(key_hash: str) -> dict[str, Any] | None:
    conn = _connect()
    try:
        row = conn.execute(f"SELECT {_API_KEY_COLUMNS} FROM api_keys WHERE key_hash = ?", (key_hash,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def touch_api_key(key_id: str) -> str:
    now = _utc_now()
    conn = _connect()
    try:
        conn.execute("UPDATE api_keys SET last_used_at = ? WHERE key_id = ?", (now, key_id))
        conn.commit()
    finally:
        conn.close()
    return now


def delete_api_key(*, key_id: str, user_id: str) -> bool:
    conn = _connect()
    try:
        cur = conn.execute("DELETE FROM api_keys WHERE key_id = ? AND user_id = ?", (key_id, user_id))
        conn.commit()
        return int(cur.rowcount or 0) > 0
    finally:
        conn.close()
