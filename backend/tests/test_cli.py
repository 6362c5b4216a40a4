from __future__ import annotations

from pathlib import Path

import pytest

import ingest_documents
from lmchat import app_db


def test_ingest_into_new_project(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    notes = tmp_path / "notes.txt"
    notes.write_text("photosynthesis converts light " * 10, encoding="utf-8")

    code = ingest_documents.main(
        [str(notes), "--user-id", "u1", "--project-name", "Biology", "--system-prompt", "Explain simply.", "--chunk-size", "100"]
    )

    assert code == 0
    project_id = capsys.readouterr().out.strip()
    project = app_db.get_project(project_id, "u1")
    assert project["name"] == "Biology"
    assert project["system_prompt"] == "Explain simply."
    docs = app_db.list_project_documents(project_id, "u1")
    assert [(d["original_filename"], d["chunk_count"]) for d in docs] == [("notes.txt", 3)]
    assert app_db.search_document_chunks(project_id, "photosynthesis")


def test_ingest_into_existing_project_reports_failures(tmp_path: Path) -> None:
    project_id = app_db.create_project(user_id="u1", name="Mixed")["project_id"]
    good = tmp_path / "good.txt"
    good.write_text("hello", encoding="utf-8")
    bad = tmp_path / "bad.exe"
    bad.write_bytes(b"MZ")

    code = ingest_documents.main([str(good), str(bad), str(tmp_path / "missing.txt"), "--user-id", "u1", "--project-id", project_id])

    assert code == 1
    assert [d["original_filename"] for d in app_db.list_project_documents(project_id, "u1")] == ["good.txt"]


def test_ingest_argument_errors(tmp_path: Path) -> None:
    f = tmp_path / "a.txt"
    f.write_text("a", encoding="utf-8")
    assert ingest_documents.main([str(f), "--user-id", "u1"]) == 2
    assert ingest_documents.main([str(f), "--user-id", "u1", "--project-id", "nope"]) == 2
