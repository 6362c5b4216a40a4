"""Test fixtures for lmchat."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from lmchat import app_db


@pytest.fixture(autouse=True)
def temp_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the app database at a fresh file for every test."""
    db_path = tmp_path / "app.sqlite"
    monkeypatch.setattr(app_db, "APP_DB_PATH", db_path)
    app_db.init_db()
    return db_path


@pytest.fixture
def project_with_docs() -> dict[str, Any]:
    project = app_db.create_project(user_id="u1", name="Physics", system_prompt="Be terse.")
    doc = app_db.create_document_with_chunks(
        project_id=project["project_id"],
        user_id="u1",
        filename="stored.txt",
        original_filename="notes.txt",
        file_type="txt",
        file_size=64,
        extracted_text="apples and pears quantum tunnelling basics bread recipes",
        chunks=["apples and pears", "quantum tunnelling basics", "bread recipes"],
    )
    return {"project": project, "document": doc}
