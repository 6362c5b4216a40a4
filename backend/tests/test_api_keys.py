from __future__ import annotations

import pytest

from lmchat import app_db
from lmchat.api_keys import ApiKeyError, authenticate_bearer, hash_api_key, issue_api_key, parse_bearer


def test_issued_key_is_stored_hashed() -> None:
    issued = issue_api_key(user_id="u1", name="laptop")

    assert issued.full_key.startswith("sk-proj-")
    assert issued.record["key_suffix"] == issued.full_key[-4:]
    assert app_db.get_api_key_by_hash(hash_api_key(issued.full_key))["key_id"] == issued.record["key_id"]
    assert app_db.get_api_key_by_hash(issued.full_key) is None


def test_issued_keys_are_unique() -> None:
    assert issue_api_key(user_id="u1", name="a").full_key != issue_api_key(user_id="u1", name="b").full_key


@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Bearer    "])
def test_parse_bearer_rejects_malformed_headers(header: str | None) -> None:
    with pytest.raises(ApiKeyError, match="Missing or invalid authorization header"):
        parse_bearer(header)


def test_parse_bearer_is_case_insensitive() -> None:
    assert parse_bearer("bearer sk-proj-abc") == "sk-proj-abc"


def test_authenticate_updates_last_used() -> None:
    issued = issue_api_key(user_id="u1", name="ci")

    rec = authenticate_bearer(f"Bearer {issued.full_key}")

    assert rec["user_id"] == "u1"
    assert rec["last_used_at"]
    assert app_db.list_api_keys("u1")[0]["last_used_at"] == rec["last_used_at"]


def test_authenticate_unknown_key() -> None:
    with pytest.raises(ApiKeyError, match="Invalid API key"):
        authenticate_bearer("Bearer sk-proj-nope")
