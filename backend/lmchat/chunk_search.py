from __future__ import annotations

import math
import re
import sqlite3
from collections import Counter
from typing import Any

_TOKEN_RE = re.compile(r"[a-z0-9]+", re.IGNORECASE)
_STOPWORDS = {
    "a",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "by",
    "can",
    "do",
    "does",
    "for",
    "from",
    "how",
    "i",
    "in",
    "is",
    "it",
    "me",
    "my",
    "of",
    "on",
    "or",
    "the",
    "this",
    "to",
    "what",
    "when",
    "where",
    "which",
    "with",
    "you",
}

# BM25 parameters (reasonable defaults).
_K1 = 1.5
_B = 0.75
_FETCH_BATCH = 500


def tokenize(text: str) -> list[str]:
    return [t for t in _TOKEN_RE.findall((text or "").lower()) if t not in _STOPWORDS]


def term_counts(text: str) -> Counter[str]:
    return Counter(tokenize(text))


def index_chunk(conn: sqlite3.Connection, *, chunk_id: str, project_id: str, content: str) -> None:
    rows = [(chunk_id, project_id, term, tf) for term, tf in term_counts(content).items()]
    if rows:
        conn.executemany("INSERT INTO chunk_terms(chunk_id, project_id, term, tf) VALUES (?,?,?,?)", rows)


def _project_stats(conn: sqlite3.Connection, project_id: str) -> tuple[int, float]:
    row = conn.execute(
        "SELECT COUNT(1) AS n, AVG(term_count) AS avgdl FROM document_chunks WHERE project_id = ?",
        (project_id,),
    ).fetchone()
    n_chunks = int(row["n"] or 0) if row else 0
    avgdl = float(row["avgdl"] or 0.0) if row else 0.0
    return n_chunks, avgdl


def _fetch_chunk_rows(conn: sqlite3.Connection, chunk_ids: list[str]) -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    # Batched to stay under SQLite's bound-parameter limit.
    for start in range(0, len(chunk_ids), _FETCH_BATCH):
        batch = chunk_ids[start : start + _FETCH_BATCH]
        qmarks = ",".join(["?"] * len(batch))
        rows = conn.execute(
            f"""
            SELECT rowid AS seq, chunk_id, document_id, project_id, chunk_index, content, token_count, term_count
            FROM document_chunks
            WHERE chunk_id IN ({qmarks})
            """,
            batch,
        ).fetchall()
        out.update((str(r["chunk_id"]), dict(r)) for r in rows)
    return out


def rank_chunks(conn: sqlite3.Connection, project_id: str, query: str, k: int) -> list[dict[str, Any]]:
    """Rank a project's chunks against ``query`` with BM25.

    A chunk is a candidate when it contains at least one query term. Results
    come back best first; equal scores keep chunk insertion order.
    """
    unique_terms = list(dict.fromkeys(tokenize(query)))
    if not unique_terms or k <= 0:
        return []

    n_chunks, avgdl = _project_stats(conn, project_id)
    if n_chunks == 0:
        return []

    scores: dict[str, float] = {}
    postings_by_term: dict[str, list[tuple[str, int]]] = {}
    idf_by_term: dict[str, float] = {}
    for term in unique_terms:
        posts = conn.execute(
            "SELECT chunk_id, tf FROM chunk_terms WHERE project_id = ? AND term = ?",
            (project_id, term),
        ).fetchall()
        if not posts:
            continue
        df = len(posts)
        idf_by_term[term] = math.log((n_chunks - df + 0.5) / (df + 0.5) + 1.0)
        postings_by_term[term] = [(str(p["chunk_id"]), int(p["tf"])) for p in posts]

    candidate_ids = sorted({cid for posts in postings_by_term.values() for cid, _ in posts})
    if not candidate_ids:
        return []

    chunk_rows = _fetch_chunk_rows(conn, candidate_ids)

    for term, posts in postings_by_term.items():
        idf = idf_by_term[term]
        for chunk_id, tf in posts:
            row = chunk_rows.get(chunk_id)
            if not row:
                continue
            dl = max(int(row["term_count"] or 0), 1)
            denom = tf + _K1 * (1.0 - _B + _B * (dl / max(avgdl, 1e-9)))
            scores[chunk_id] = scores.get(chunk_id, 0.0) + idf * (tf * (_K1 + 1.0) / denom)

    ordered = sorted(scores.items(), key=lambda kv: (-kv[1], int(chunk_rows[kv[0]]["seq"])))[:k]
    out: list[dict[str, Any]] = []
    for chunk_id, score in ordered:
        row = dict(chunk_rows[chunk_id])
        row.pop("seq", None)
        row.pop("term_count", None)
        row["rank"] = float(score)
        out.append(row)
    return out
