from __future__ import annotations

import base64
import json
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import boto3

from id58 import uuid4_base58_22
from pm_store import AlreadyLinkedError
from pm_store import ConflictError
from pm_store import DuplicateEmailError
from pm_store import NotFoundError
from pm_store import SingleTableStore
from pm_store import StoreError

DEFAULT_SCHEMA_VERSION = "2026-10-01"
DEFAULT_DOMAIN = "default"

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-headers": "Content-Type,Authorization",
    "access-control-allow-methods": "GET,POST,PUT,DELETE,OPTIONS",
}

_ddb_resource: Any | None = None


def _ddb() -> Any:
    global _ddb_resource
    if _ddb_resource is None:
        _ddb_resource = boto3.resource("dynamodb")
    return _ddb_resource


def table_from_name(table_name: str) -> Any:
    name = str(table_name or "").strip()
    if not name:
        raise ValueError("TABLE_NAME is required")
    return _ddb().Table(name)


def build_store(table_name: str, *, conditional_writes: bool = False) -> SingleTableStore:
    return SingleTableStore(table_from_name(table_name), conditional_writes=conditional_writes)


def truthy(raw: str | None) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


def schema_version() -> str:
    return os.environ.get("SCHEMA_VERSION", "") or DEFAULT_SCHEMA_VERSION


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def response(status_code: int, body: dict[str, Any], request_id: str) -> dict[str, Any]:
    payload = dict(body)
    payload.setdefault("requestId", request_id)
    payload.setdefault("schemaVersion", schema_version())
    return {
        "statusCode": int(status_code),
        "headers": {
            "content-type": "application/json",
            "cache-control": "no-store",
            **CORS_HEADERS,
        },
        "body": json.dumps(payload),
    }


def error(status_code: int, code: str, message: str, request_id: str) -> dict[str, Any]:
    return response(
        status_code,
        {"errorCode": code, "message": message},
        request_id,
    )


def request_id(event: dict[str, Any]) -> str:
    rc = event.get("requestContext") or {}
    if isinstance(rc, dict):
        rid = str(rc.get("requestId") or "").strip()
        if rid:
            return rid
    return uuid4_base58_22()


def parse_body(event: dict[str, Any]) -> tuple[dict[str, Any] | None, str | None]:
    raw = event.get("body")
    if raw is None:
        return {}, None
    if not isinstance(raw, str):
        return None, "request body must be a JSON object"
    if bool(event.get("isBase64Encoded")):
        try:
            raw = base64.b64decode(raw.encode("utf-8")).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return None, "request body base64 decode failed"
    if not raw.strip():
        return {}, None
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None, "request body must be valid JSON"
    if not isinstance(parsed, dict):
        return None, "request body must be a JSON object"
    return parsed, None


def route_segments(event: dict[str, Any], root: str) -> list[str]:
    """Path segments from ``root`` onward, e.g. ``['tasks', 'task-1', 'link']``.

    Anything before the root (custom-domain base paths, stage names) is dropped.
    """
    segments = [s for s in str(event.get("path") or "").split("/") if s]
    if root in segments:
        return segments[segments.index(root):]
    return segments


def claims(event: dict[str, Any]) -> dict[str, Any]:
    rc = event.get("requestContext") or {}
    if not isinstance(rc, dict):
        return {}
    auth = rc.get("authorizer") or {}
    if not isinstance(auth, dict):
        return {}
    c = auth.get("claims")
    if isinstance(c, dict):
        return c
    jwt_claims = (auth.get("jwt") or {}).get("claims")
    if isinstance(jwt_claims, dict):
        return jwt_claims
    return {}


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str
    domain: str


def domain_from_claims(c: dict[str, Any]) -> str:
    explicit = str(c.get("custom:domain") or "").strip().lower()
    if explicit:
        return explicit
    email = str(c.get("email") or "").strip().lower()
    host = email.split("@")[1] if "@" in email else ""
    # acme.com -> acme
    label = host.split(".")[0] if host else ""
    return label or DEFAULT_DOMAIN


def identity(event: dict[str, Any]) -> Identity | None:
    c = claims(event)
    sub = str(c.get("sub") or "").strip()
    email = str(c.get("email") or "").strip()
    if not sub and not email:
        return None
    return Identity(user_id=sub, email=email or sub, domain=domain_from_claims(c))


def pick(body: dict[str, Any], allowed: tuple[str, ...]) -> dict[str, Any]:
    return {k: body[k] for k in allowed if k in body}


def is_non_negative_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return value >= 0


def store_error_response(exc: StoreError, request_id: str) -> dict[str, Any]:
    if isinstance(exc, NotFoundError):
        return error(404, f"{exc.entity_type}_NOT_FOUND", str(exc), request_id)
    if isinstance(exc, DuplicateEmailError):
        return error(409, "DUPLICATE_EMAIL", str(exc), request_id)
    if isinstance(exc, ConflictError):
        return error(409, "CONFLICT", str(exc), request_id)
    if isinstance(exc, AlreadyLinkedError):
        return error(400, "ALREADY_LINKED", str(exc), request_id)
    return error(500, "INTERNAL_ERROR", str(exc), request_id)


def failure(log: dict[str, Any], exc: Exception, code: str, request_id: str) -> dict[str, Any]:
    log["error"] = {"type": type(exc).__name__, "message": str(exc)}
    return error(500, code, str(exc), request_id)


def new_wide_event(event: dict[str, Any], name: str, rid: str) -> dict[str, Any]:
    return {
        "event": name,
        "schema_version": schema_version(),
        "ts": now_iso(),
        "request_id": rid,
        "method": str(event.get("httpMethod") or "").upper(),
        "path": str(event.get("path") or ""),
    }


def emit_wide_event(log: dict[str, Any], start: float, out: dict[str, Any] | None) -> None:
    status_code = int((out or {}).get("statusCode") or 500)
    log["status_code"] = status_code
    if status_code < 400:
        log["outcome"] = "success"
    elif status_code < 500:
        log["outcome"] = "rejected"
    else:
        log["outcome"] = "error"
    if status_code >= 400 and out:
        try:
            log["error_code"] = str(json.loads(out.get("body") or "{}").get("errorCode") or "")
        except ValueError:
            log["error_code"] = ""
    log["duration_ms"] = int((time.time() - start) * 1000)
    # Request bodies and tokens are never logged.
    print(json.dumps(log, separators=(",", ":"), sort_keys=True))
