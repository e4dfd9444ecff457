"""
Wrapper factories and log sink used by instrumented code.

The section between the inline markers is copied into every instrumented file
(after its docstring and ``__future__`` imports), so an instrumented program
never imports trace_weaver at run time.

Wrappers:
- ``_tw_function``: ENTER / EXIT / ERROR around functions, methods and lambdas
- ``_tw_generator``: ENTER, one completion marker, ERROR around generators
- ``_tw_endpoint``: request snapshot, status and duration around inline route handlers
- ``_tw_endpoint_ref``: ENTER-only forwarder for handlers passed by reference

Logging never raises into the traced program; the wrapped callable's return
values and exceptions pass through untouched.

ENTER is deferred for ``async def`` functions and for generators: the wrapper is
itself a coroutine or generator function, so ENTER is logged when the body first
runs (on the first ``await``, ``next`` or ``asend``), not when it is called. A
coroutine or generator that is created but never run logs nothing.
"""
from __future__ import annotations

from typing import Callable, Optional

from .serialization import _tw_http_marker, _tw_safe_to_string

# --- begin inline runtime ---
import functools as _tw_functools
import inspect as _tw_inspect
import logging as _tw_logging
import os as _tw_os
import sys as _tw_sys
import time as _tw_time


def _tw_default_sink():
    target = _tw_os.getenv("TRACE_WEAVER_SINK", "stdout").strip().lower()
    if target == "logging":
        return _tw_logging.getLogger("trace_weaver.events").info
    to_stderr = target == "stderr"

    def _tw_print(line):
        print(line, file=_tw_sys.stderr if to_stderr else _tw_sys.stdout, flush=True)

    return _tw_print


_tw_sink = _tw_default_sink()


def _tw_emit(line):
    try:
        _tw_sink(line)
    except Exception:  # noqa: BLE001
        # A broken sink must not break the traced call
        _tw_logging.getLogger("trace_weaver.events").debug("Trace sink failed", exc_info=True)


def _tw_arguments(args, kwargs, bound):
    values = list(args[1:] if bound else args)
    if kwargs:
        values.append(dict(kwargs))
    return values


def _tw_settle(result, on_exit, on_error):
    """Report the outcome of an awaitable ``result`` without changing it."""
    add_done_callback = getattr(result, "add_done_callback", None)
    if callable(add_done_callback) and callable(getattr(result, "cancelled", None)):
        # Futures and tasks: same object back, outcome observed via callback
        def _tw_done(future):
            if future.cancelled():
                on_error("[cancelled]")
                return
            error = future.exception()
            if error is None:
                on_exit(future.result())
            else:
                on_error(error)

        add_done_callback(_tw_done)
        return result
    if not _tw_inspect.iscoroutine(result):
        # Custom awaitables may also be context managers or carry other API;
        # hand back the same object and report it as returned
        on_exit(result)
        return result

    async def _tw_settled():
        try:
            value = await result
        except BaseException as error:
            on_error(error)
            raise
        on_exit(value)
        return value

    return _tw_settled()


def _tw_function(file, scope, name, bound=False):
    prefix = "|FUNCTION|" + file + "|" + scope + "|" + name + "|"

    def _tw_enter(args, kwargs):
        _tw_emit("ENTER" + prefix + _tw_safe_to_string(_tw_arguments(args, kwargs, bound)))

    def _tw_exit(value):
        _tw_emit("EXIT" + prefix + _tw_safe_to_string(value))

    def _tw_error(error):
        _tw_emit("ERROR" + prefix + _tw_safe_to_string(error))

    def decorate(original):
        if _tw_inspect.iscoroutinefunction(original):
            @_tw_functools.wraps(original)
            async def _tw_traced(*args, **kwargs):
                _tw_enter(args, kwargs)
                try:
                    result = await original(*args, **kwargs)
                except BaseException as error:
                    _tw_error(error)
                    raise
                _tw_exit(result)
                return result

            return _tw_traced

        @_tw_functools.wraps(original)
        def _tw_traced(*args, **kwargs):
            _tw_enter(args, kwargs)
            try:
                result = original(*args, **kwargs)
            except BaseException as error:
                _tw_error(error)
                raise
            if _tw_inspect.isawaitable(result):
                return _tw_settle(result, _tw_exit, _tw_error)
            _tw_exit(result)
            return result

        return _tw_traced

    return decorate


def _tw_generator(file, scope, name, bound=False):
    prefix = "|FUNCTION|" + file + "|" + scope + "|" + name + "|"

    def _tw_enter(args, kwargs):
        _tw_emit("ENTER" + prefix + _tw_safe_to_string(_tw_arguments(args, kwargs, bound)))

    def _tw_finish(marker):
        _tw_emit("EXIT" + prefix + marker)

    def _tw_error(error):
        _tw_emit("ERROR" + prefix + _tw_safe_to_string(error))

    def decorate(original):
        if _tw_inspect.isasyncgenfunction(original):
            @_tw_functools.wraps(original)
            async def _tw_traced(*args, **kwargs):
                _tw_enter(args, kwargs)
                try:
                    inner = original(*args, **kwargs)
                    pending = inner.asend(None)
                    while True:
                        try:
                            value = await pending
                        except StopAsyncIteration:
                            break
                        try:
                            sent = yield value
                        except GeneratorExit:
                            await inner.aclose()
                            raise
                        except BaseException as thrown:
                            pending = inner.athrow(thrown)
                        else:
                            pending = inner.asend(sent)
                except GeneratorExit:
                    _tw_finish("[generator closed]")
                    raise
                except BaseException as error:
                    _tw_error(error)
                    raise
                _tw_finish("[generator completed]")

            return _tw_traced

        @_tw_functools.wraps(original)
        def _tw_traced(*args, **kwargs):
            _tw_enter(args, kwargs)
            try:
                result = yield from original(*args, **kwargs)
            except GeneratorExit:
                _tw_finish("[generator closed]")
                raise
            except BaseException as error:
                _tw_error(error)
                raise
            _tw_finish("[generator completed]")
            return result

        return _tw_traced

    return decorate


def _tw_active_request():
    # Flask handlers take no request argument; read the request context instead
    flask = _tw_sys.modules.get("flask")
    if flask is None or not flask.has_request_context():
        return None
    return flask.request._get_current_object()


def _tw_request_snapshot(args, kwargs):
    snapshot = {"params": dict(kwargs), "query": {}, "body": None}
    try:
        request = None
        for candidate in (*args, *kwargs.values()):
            if _tw_http_marker(candidate) == "[Request]":
                request = candidate
                break
        if request is None:
            request = _tw_active_request()
        if request is None:
            return snapshot
        if not kwargs:
            for attribute in ("path_params", "match_info", "view_args"):
                value = getattr(request, attribute, None)
                if value:
                    snapshot["params"] = dict(value)
                    break
        for attribute in ("query_params", "query", "args"):
            value = getattr(request, attribute, None)
            if value is not None and hasattr(value, "keys"):
                snapshot["query"] = {key: value[key] for key in value.keys()}
                break
        if getattr(request, "is_json", False):
            snapshot["body"] = request.get_json(silent=True)
    except Exception:  # noqa: BLE001
        _tw_logging.getLogger("trace_weaver.events").debug("Request snapshot failed", exc_info=True)
    return snapshot


def _tw_status_of(result):
    try:
        for attribute in ("status_code", "status"):
            value = getattr(result, attribute, None)
            if isinstance(value, int):
                return value
        if isinstance(result, tuple) and len(result) > 1 and isinstance(result[1], int):
            return result[1]
    except Exception:  # noqa: BLE001
        return None
    return None


def _tw_endpoint(verb, path, file):
    prefix = "|ENDPOINT|" + verb + "|" + path + "|" + file + "|"

    def _tw_enter(args, kwargs):
        _tw_emit("ENTER" + prefix + _tw_safe_to_string(_tw_request_snapshot(args, kwargs)))

    def _tw_exit_after(started):
        def _tw_exit(result):
            elapsed = round((_tw_time.perf_counter() - started) * 1000, 3)
            outcome = {"status": _tw_status_of(result), "duration_ms": elapsed}
            _tw_emit("EXIT" + prefix + _tw_safe_to_string(outcome))

        return _tw_exit

    def _tw_error(error):
        _tw_emit("ERROR" + prefix + _tw_safe_to_string(error))

    def decorate(handler):
        if _tw_inspect.iscoroutinefunction(handler):
            @_tw_functools.wraps(handler)
            async def _tw_handled(*args, **kwargs):
                started = _tw_time.perf_counter()
                _tw_enter(args, kwargs)
                try:
                    result = await handler(*args, **kwargs)
                except BaseException as error:
                    _tw_error(error)
                    raise
                _tw_exit_after(started)(result)
                return result

            return _tw_handled

        @_tw_functools.wraps(handler)
        def _tw_handled(*args, **kwargs):
            started = _tw_time.perf_counter()
            _tw_enter(args, kwargs)
            try:
                result = handler(*args, **kwargs)
            except BaseException as error:
                _tw_error(error)
                raise
            if _tw_inspect.isawaitable(result):
                return _tw_settle(result, _tw_exit_after(started), _tw_error)
            _tw_exit_after(started)(result)
            return result

        return _tw_handled

    return decorate


def _tw_endpoint_ref(verb, path, file, name):
    line = "ENTER|ENDPOINT|" + verb + "|" + path + "|" + file + "|" + name

    def decorate(handler):
        # Class-based views and middleware objects are left alone
        if isinstance(handler, type) or not callable(handler):
            return handler
        if _tw_inspect.iscoroutinefunction(handler):
            @_tw_functools.wraps(handler)
            async def _tw_forward(*args, **kwargs):
                _tw_emit(line)
                return await handler(*args, **kwargs)

            return _tw_forward

        @_tw_functools.wraps(handler)
        def _tw_forward(*args, **kwargs):
            _tw_emit(line)
            return handler(*args, **kwargs)

        return _tw_forward

    return decorate
# --- end inline runtime ---


def set_sink(sink: Optional[Callable[[str], None]]) -> None:
    """
    Send log lines from wrappers built by this module to ``sink``.

    Pass ``None`` to go back to the ``TRACE_WEAVER_SINK`` default. Instrumented
    files carry their own copy of the helpers and keep their own ``_tw_sink``.
    """
    global _tw_sink
    _tw_sink = sink if sink is not None else _tw_default_sink()


def get_sink() -> Callable[[str], None]:
    return _tw_sink
