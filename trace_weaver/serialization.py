"""
Crash-proof value serialization for trace payloads.

Everything between the inline markers is copied into each instrumented file by
``trace_weaver.prelude``, so it only uses aliased standard-library imports and
``_tw_``-prefixed names.
"""
from __future__ import annotations

# --- begin inline runtime ---
import json as _tw_json
import types as _tw_types

# (module, qualname) of framework request/response classes, matched over the MRO
_TW_REQUEST_TYPES = frozenset({
    ("starlette.requests", "HTTPConnection"),
    ("starlette.requests", "Request"),
    ("starlette.websockets", "WebSocket"),
    ("werkzeug.sansio.request", "Request"),
    ("werkzeug.wrappers.request", "Request"),
    ("flask.wrappers", "Request"),
    ("aiohttp.web_request", "BaseRequest"),
    ("aiohttp.web_request", "Request"),
    ("django.http.request", "HttpRequest"),
})
_TW_RESPONSE_TYPES = frozenset({
    ("starlette.responses", "Response"),
    ("werkzeug.sansio.response", "Response"),
    ("werkzeug.wrappers.response", "Response"),
    ("flask.wrappers", "Response"),
    ("aiohttp.web_response", "StreamResponse"),
    ("aiohttp.web_response", "Response"),
    ("django.http.response", "HttpResponseBase"),
})


def _tw_http_marker(value):
    """Return ``[Request]`` / ``[Response]`` for framework objects, else None."""
    for klass in type(value).__mro__:
        identity = (getattr(klass, "__module__", ""), getattr(klass, "__qualname__", ""))
        if identity in _TW_REQUEST_TYPES:
            return "[Request]"
        if identity in _TW_RESPONSE_TYPES:
            return "[Response]"
    return None


def _tw_prepare(value, seen):
    """
    Build a JSON-ready copy of ``value``.

    ``seen`` maps the id of every container visited during this call to the
    container itself, which keeps temporaries alive so ids are not reused. A
    second visit, through a cycle or a shared reference, becomes ``[Circular]``
    and the work stays linear in the number of distinct objects.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    marker = _tw_http_marker(value)
    if marker is not None:
        return marker
    if isinstance(value, BaseException):
        message = str(value)
        return type(value).__name__ + ": " + message if message else type(value).__name__
    if isinstance(value, (type, _tw_types.ModuleType)) or callable(value):
        return str(value)
    if isinstance(value, (dict, list, tuple, set, frozenset)) and not value:
        return {} if isinstance(value, dict) else []

    identity = id(value)
    if identity in seen:
        return "[Circular]"
    seen[identity] = value
    if isinstance(value, dict):
        return {
            key if isinstance(key, str) else str(key): _tw_prepare(item, seen)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_tw_prepare(item, seen) for item in value]
    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        return _tw_prepare(model_dump(), seen)
    if hasattr(value, "__dict__"):
        return _tw_prepare(dict(vars(value)), seen)
    return str(value)


def _tw_safe_to_string(value):
    """Serialize any value to text. Never raises."""
    try:
        return _tw_json.dumps(_tw_prepare(value, {}), separators=(",", ":"), ensure_ascii=False)
    except Exception:  # noqa: BLE001
        try:
            return str(value)
        except Exception:  # noqa: BLE001
            return "[stringify error]"
# --- end inline runtime ---


safe_to_string = _tw_safe_to_string
http_marker = _tw_http_marker
