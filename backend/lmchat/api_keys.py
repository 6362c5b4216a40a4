from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from typing import Any

from . import app_db
from .logging_utils import get_logger

log = get_logger(__name__)

KEY_PREFIX = "sk-proj-"
_BEARER = "bearer "


class ApiKeyError(RuntimeError):
    pass


@dataclass(frozen=True)
class IssuedKey:
    record: dict[str, Any]
    full_key: str


def generate_api_key() -> str:
    return KEY_PREFIX + secrets.token_urlsafe(32)


def hash_api_key(key: str) -> str:
    return hashlib.sha256(str(key or "").encode("utf-8")).hexdigest()


def mask_key(suffix: str) -> str:
    return f"{KEY_PREFIX}...{suffix}"


def issue_api_key(*, user_id: str, name: str) -> IssuedKey:
    key = generate_api_key()
    rec = app_db.create_api_key(user_id=user_id, name=name, key_hash=hash_api_key(key), key_suffix=key[-4:])
    log.info("Issued API key %s for user %s", rec["key_id"], user_id)
    return IssuedKey(record=rec, full_key=key)


def parse_bearer(authorization: str | None) -> str:
    header = str(authorization or "").strip()
    if not header.lower().startswith(_BEARER):
        raise ApiKeyError("Missing or invalid authorization header")
    token = header[len(_BEARER) :].strip()
    if not token:
        raise ApiKeyError("Missing or invalid authorization header")
    return token


def authenticate_bearer(authorization: str | None) -> dict[str, Any]:
    token = parse_bearer(authorization)
    rec = app_db.get_api_key_by_hash(hash_api_key(token))
    if not rec:
        raise ApiKeyError("Invalid API key")
    rec["last_used_at"] = app_db.touch_api_key(str(rec["key_id"]))
    return rec
