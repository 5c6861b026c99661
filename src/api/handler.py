from __future__ import annotations

import atexit
import base64
import binascii
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote

from pydantic import ValidationError

from common.auth import is_authorized
from common.config import Settings
from common.logging_cfg import setup_logging
from state.engine import StateEngine
from state.errors import InputValidationError, LockNotFoundError, NotFoundError, StoreError
from state.models import LockInfo, LockResult, LockStatus, StateDocument
from state.mongo_store import MongoStorage
from state.resources import ROOT_MODULE


log = logging.getLogger(__name__)

# Leave this much of the Lambda deadline for building the response.
RESPONSE_MARGIN_SECONDS = 0.5
MIN_STORE_TIMEOUT = 0.1

BASE_HEADERS = {
    "Content-Type": "application/json",
    "Access-Control-Allow-Origin": "*",
}

# Process-lifetime handles, created on first request (cold start).
_SETTINGS: Optional[Settings] = None
_ENGINE: Optional[StateEngine] = None


class _Request:
    def __init__(self, event: Dict[str, Any]) -> None:
        ctx_http = (event.get("requestContext") or {}).get("http") or {}
        self.method: str = str(event.get("httpMethod") or ctx_http.get("method") or "GET").upper()
        path = str(event.get("path") or event.get("rawPath") or "/")
        self.segments: List[str] = [unquote(s) for s in path.strip("/").split("/") if s]
        self.query: Dict[str, str] = {
            str(k): str(v) for k, v in (event.get("queryStringParameters") or {}).items() if v is not None
        }
        self.headers: Dict[str, str] = {
            str(k).lower(): str(v) for k, v in (event.get("headers") or {}).items() if v is not None
        }
        self.body: Optional[str] = event.get("body")
        self.is_base64: bool = bool(event.get("isBase64Encoded"))


def _response(status: int, payload: Any = None, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    out_headers = dict(BASE_HEADERS)
    if headers:
        out_headers.update(headers)
    body = "" if payload is None else json.dumps(payload, separators=(",", ":"))
    return {"statusCode": status, "headers": out_headers, "body": body}


def _error(status: int, message: str) -> Dict[str, Any]:
    return _response(status, {"error": message})


def _dump(model: Any) -> Any:
    return model.model_dump(mode="json", by_alias=True, exclude_unset=True)


def _int_param(query: Dict[str, str], key: str, default: int) -> int:
    raw = query.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as ex:
        raise InputValidationError(f"failed to parse {key}: {raw!r} is not an integer") from ex


def _flag_param(query: Dict[str, str], key: str) -> bool:
    return query.get(key, "").strip().lower() in ("1", "true", "yes")


def _json_body(req: _Request) -> Any:
    if not req.body:
        raise InputValidationError("request body is required")
    try:
        raw = base64.b64decode(req.body, validate=True).decode("utf-8") if req.is_base64 else req.body
        return json.loads(raw)
    except (binascii.Error, ValueError) as ex:
        raise InputValidationError(f"failed to decode body: {ex}") from ex


def _parse_model(model: Any, req: _Request, what: str) -> Any:
    try:
        return model.model_validate(_json_body(req))
    except ValidationError as ex:
        raise InputValidationError(f"failed to decode {what}: {ex}") from ex


def _lock_response(result: LockResult) -> Dict[str, Any]:
    if result.status == LockStatus.ALREADY_HELD:
        return _response(423, _dump(result.lock))
    if result.status == LockStatus.CONFLICT:
        return _response(409, _dump(result.lock))
    return _response(200)


# -------- Operations --------
def _list_states(engine: StateEngine, req: _Request, settings: Settings, timeout: float) -> Dict[str, Any]:
    page = _int_param(req.query, "page", 1)
    per_page = _int_param(req.query, "per_page", settings.page_size)
    return _response(200, _dump(engine.list_states(page, per_page, timeout=timeout)))


def _get_state(engine: StateEngine, req: _Request, name: str, timeout: float) -> Dict[str, Any]:
    serial = _int_param(req.query, "serial", 0)
    return _response(200, _dump(engine.get_state(name, serial, timeout=timeout)))


def _insert_state(engine: StateEngine, req: _Request, name: str, timeout: float) -> Dict[str, Any]:
    doc = _parse_model(StateDocument, req, "state")
    engine.insert_state(
        name,
        doc,
        timestamp=req.query.get("timestamp"),
        source=req.query.get("source"),
        timeout=timeout,
    )
    return _response(200)


def _remove_state(engine: StateEngine, name: str, timeout: float) -> Dict[str, Any]:
    engine.remove_state(name, timeout=timeout)
    return _response(200)


def _lock_state(engine: StateEngine, req: _Request, name: str, timeout: float) -> Dict[str, Any]:
    info = _parse_model(LockInfo, req, "lock")
    return _lock_response(engine.lock_state(name, info, timeout=timeout))


def _unlock_state(engine: StateEngine, req: _Request, name: str, timeout: float) -> Dict[str, Any]:
    info = _parse_model(LockInfo, req, "lock") if req.body else LockInfo()
    force = _flag_param(req.query, "force")
    return _lock_response(engine.unlock_state(name, info, force=force, timeout=timeout))


def _get_lock_status(engine: StateEngine, name: str, timeout: float) -> Dict[str, Any]:
    return _response(200, _dump(engine.get_lock_status(name, timeout=timeout)))


def _list_state_serials(
    engine: StateEngine, req: _Request, name: str, settings: Settings, timeout: float
) -> Dict[str, Any]:
    page = _int_param(req.query, "page", 1)
    per_page = _int_param(req.query, "per_page", settings.page_size)
    return _response(200, _dump(engine.list_state_serials(name, page, per_page, timeout=timeout)))


def _get_resource(
    engine: StateEngine, state: str, module: str, name: str, timeout: float
) -> Dict[str, Any]:
    return _response(200, _dump(engine.get_resource(state, module, name, timeout=timeout)))


def _route(
    req: _Request, engine: StateEngine, settings: Settings, timeout: float
) -> Tuple[Optional[Callable[[], Dict[str, Any]]], List[str]]:
    """Resolve (operation, allowed methods) for a request; operation is None when unmatched."""
    seg = req.segments
    m = req.method
    if len(seg) < 2 or seg[0] != "v1":
        return (None, [])

    if seg[1] == "states":
        if len(seg) == 2:
            ops = {"GET": lambda: _list_states(engine, req, settings, timeout)}
        elif len(seg) == 3:
            name = seg[2]
            ops = {
                "GET": lambda: _get_state(engine, req, name, timeout),
                "POST": lambda: _insert_state(engine, req, name, timeout),
                "DELETE": lambda: _remove_state(engine, name, timeout),
                "LOCK": lambda: _lock_state(engine, req, name, timeout),
                "UNLOCK": lambda: _unlock_state(engine, req, name, timeout),
            }
        elif len(seg) == 4 and seg[3] == "serials":
            name = seg[2]
            ops = {"GET": lambda: _list_state_serials(engine, req, name, settings, timeout)}
        elif len(seg) == 4 and seg[3] == "lock":
            # Standard-method aliases for gateways that reject LOCK/UNLOCK.
            name = seg[2]
            ops = {
                "GET": lambda: _get_lock_status(engine, name, timeout),
                "POST": lambda: _lock_state(engine, req, name, timeout),
                "DELETE": lambda: _unlock_state(engine, req, name, timeout),
            }
        else:
            return (None, [])
    elif seg[1] == "resources":
        if len(seg) == 5:
            state, module, name = seg[2], seg[3], seg[4]
        elif len(seg) == 4:
            state, module, name = seg[2], ROOT_MODULE, seg[3]
        else:
            return (None, [])
        ops = {"GET": lambda: _get_resource(engine, state, module, name, timeout)}
    else:
        return (None, [])

    return (ops.get(m), sorted(ops))


# -------- Process-scoped handles --------
def _load_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
        setup_logging(_SETTINGS.log_level)
    return _SETTINGS


def _build_engine(settings: Settings) -> StateEngine:
    storage = MongoStorage.connect(
        settings.mongodb_url,
        username=settings.mongodb_username,
        password=settings.mongodb_password,
        database=settings.mongodb_database,
        timeout=settings.store_timeout,
        fernet_key=settings.fernet_key,
    )
    atexit.register(storage.close)
    return StateEngine(storage)


def _get_engine(settings: Settings) -> StateEngine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = _build_engine(settings)
    return _ENGINE


def reset(*, settings: Optional[Settings] = None, engine: Optional[StateEngine] = None) -> None:
    """Replace (or clear) the cached settings and engine."""
    global _SETTINGS, _ENGINE
    _SETTINGS = settings
    _ENGINE = engine


def _store_timeout(context: Any, settings: Settings) -> float:
    timeout = settings.store_timeout
    remaining_ms = getattr(context, "get_remaining_time_in_millis", None)
    if callable(remaining_ms):
        remaining = remaining_ms() / 1000.0 - RESPONSE_MARGIN_SECONDS
        timeout = min(timeout, max(remaining, MIN_STORE_TIMEOUT))
    return timeout


def handle(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    settings = _load_settings()
    req = _Request(event)

    if req.method == "OPTIONS":
        return _response(
            204,
            headers={
                "Access-Control-Allow-Methods": "GET,POST,DELETE,LOCK,UNLOCK,OPTIONS",
                "Access-Control-Allow-Headers": "Authorization,Content-Type",
            },
        )

    if not is_authorized(req.headers.get("authorization"), settings.api_username, settings.api_password):
        return _response(
            401,
            {"error": "not authorized"},
            headers={"WWW-Authenticate": 'Basic realm="Restricted"'},
        )

    timeout = _store_timeout(context, settings)
    try:
        engine = _get_engine(settings)
        op, allowed = _route(req, engine, settings, timeout)
        if op is None:
            if allowed:
                return _response(405, {"error": "method not allowed"}, headers={"Allow": ", ".join(allowed)})
            return _error(404, "no such route")
        return op()
    except NotFoundError as ex:
        log.debug("%s /%s: %s", req.method, "/".join(req.segments), ex)
        return _error(404, str(ex))
    except LockNotFoundError as ex:
        log.info("%s /%s: %s", req.method, "/".join(req.segments), ex)
        return _error(404, str(ex))
    except InputValidationError as ex:
        log.info("%s /%s rejected: %s", req.method, "/".join(req.segments), ex)
        return _error(400, str(ex))
    except StoreError as ex:
        log.error("%s /%s failed: %s", req.method, "/".join(req.segments), ex, exc_info=True)
        return _error(500, f"internal server error: {ex}")


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entry for the TerraDB HTTP API (API Gateway proxy integration).

    Environment: see `common.config.Settings`.
    """
    return handle(event, context)
