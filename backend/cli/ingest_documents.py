from __future__ import annotations

import argparse
import sqlite3
import sys
from pathlib import Path

from lmchat import app_db
from lmchat.config import CHUNK_SIZE
from lmchat.documents import DocumentError, prepare_document


def log(msg: str) -> None:
    print(msg, file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Add local files to a project's knowledge base.")
    ap.add_argument("paths", nargs="+", type=Path, help="Files to ingest (.txt, .pdf, .doc, .docx)")
    ap.add_argument("--user-id", required=True, help="Owner of the project")
    ap.add_argument("--project-id", default="", help="Existing project id")
    ap.add_argument("--project-name", default="", help="Create a new project with this name instead")
    ap.add_argument("--system-prompt", default=None, help="System prompt for a newly created project")
    ap.add_argument("--chunk-size", type=int, default=CHUNK_SIZE, help="Characters per chunk")
    args = ap.parse_args(argv)

    if bool(args.project_id) == bool(args.project_name):
        log("ERROR: pass exactly one of --project-id or --project-name.")
        return 2

    app_db.init_db()
    if args.project_name:
        project = app_db.create_project(
            user_id=args.user_id, name=args.project_name, system_prompt=args.system_prompt
        )
        log(f"Created project {project['project_id']} ({project['name']})")
    else:
        project = app_db.get_project(args.project_id, args.user_id)
        if not project:
            log(f"ERROR: project {args.project_id} not found for user {args.user_id}.")
            return 2

    failures = 0
    for path in args.paths:
        if not path.is_file():
            log(f"  Skipped (not a file): {path}")
            failures += 1
            continue
        try:
            prepared = prepare_document(path.name, path.read_bytes(), chunk_size=args.chunk_size)
            rec = app_db.create_document_with_chunks(
                project_id=project["project_id"],
                user_id=args.user_id,
                filename=prepared.filename,
                original_filename=prepared.original_filename,
                file_type=prepared.file_type,
                file_size=prepared.file_size,
                extracted_text=prepared.extracted_text,
                chunks=prepared.chunks,
            )
        except (DocumentError, OSError, sqlite3.Error) as e:
            log(f"  Failed: {path}: {e}")
            failures += 1
            continue
        log(f"  Done: {path.name} ({rec['chunk_count']} chunks)")

    print(project["project_id"])
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
