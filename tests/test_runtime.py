import asyncio
import inspect
import logging

import pytest

from trace_weaver import runtime
from trace_weaver.runtime import (
    _tw_default_sink,
    _tw_endpoint,
    _tw_endpoint_ref,
    _tw_function,
    _tw_generator,
    set_sink,
)


class LedgerError(Exception):
    pass


class FakeRequest:
    def __init__(self, path_params=None, query_params=None):
        self.path_params = path_params or {}
        self.query_params = query_params or {}


FakeRequest.__module__ = "starlette.requests"
FakeRequest.__qualname__ = "Request"


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


@pytest.fixture
def sink(recorder):
    set_sink(recorder)
    return recorder


def test_sync_function_logs_enter_and_exit(sink):
    payload = {"total": 5}

    def compute(a, b):
        return payload

    traced = _tw_function("calc.py", "", "compute")(compute)

    assert traced(2, 3) is payload
    assert sink.lines == [
        "ENTER|FUNCTION|calc.py||compute|[2,3]",
        'EXIT|FUNCTION|calc.py||compute|{"total":5}',
    ]
    assert traced.__wrapped__ is compute
    assert traced.__name__ == "compute"


def test_keyword_arguments_follow_positionals(sink):
    traced = _tw_function("calc.py", "", "scale")(lambda value, factor=1: value * factor)

    assert traced(4, factor=3) == 12
    assert sink.lines[0] == 'ENTER|FUNCTION|calc.py||scale|[4,{"factor":3}]'


def test_bound_receiver_is_left_out_of_arguments(sink):
    class Account:
        @_tw_function("bank.py", "Account", "deposit", bound=True)
        def deposit(self, amount):
            return amount + 1

    assert Account().deposit(10) == 11
    assert sink.lines == [
        "ENTER|FUNCTION|bank.py|Account|deposit|[10]",
        "EXIT|FUNCTION|bank.py|Account|deposit|11",
    ]


def test_exception_is_logged_and_reraised_unchanged(sink):
    error = LedgerError("overdrawn")

    def withdraw(amount):
        raise error

    traced = _tw_function("bank.py", "", "withdraw")(withdraw)

    with pytest.raises(LedgerError) as excinfo:
        traced(50)

    assert excinfo.value is error
    assert sink.lines == [
        "ENTER|FUNCTION|bank.py||withdraw|[50]",
        'ERROR|FUNCTION|bank.py||withdraw|"LedgerError: overdrawn"',
    ]


def test_async_function_logs_resolved_value(sink):
    async def fetch(key):
        await asyncio.sleep(0)
        return {"key": key}

    traced = _tw_function("store.py", "", "fetch")(fetch)

    assert inspect.iscoroutinefunction(traced)
    assert asyncio.run(traced("a")) == {"key": "a"}
    assert sink.lines == [
        'ENTER|FUNCTION|store.py||fetch|["a"]',
        'EXIT|FUNCTION|store.py||fetch|{"key":"a"}',
    ]


def test_rejected_async_function_logs_only_error(sink):
    error = LedgerError("timeout")

    async def fetch():
        raise error

    traced = _tw_function("store.py", "", "fetch")(fetch)

    with pytest.raises(LedgerError) as excinfo:
        asyncio.run(traced())

    assert excinfo.value is error
    assert [line.split("|")[0] for line in sink.lines] == ["ENTER", "ERROR"]


def test_returned_awaitable_is_settled_before_exit(sink):
    async def later():
        return 9

    traced = _tw_function("jobs.py", "", "schedule")(lambda: later())

    pending = traced()
    assert sink.lines == ["ENTER|FUNCTION|jobs.py||schedule|[]"]
    assert asyncio.run(pending) == 9
    assert sink.lines[-1] == "EXIT|FUNCTION|jobs.py||schedule|9"


class PooledConnection:
    """Awaitable that is also an async context manager."""

    def __init__(self):
        self.name = "pool"

    def __await__(self):
        yield from asyncio.sleep(0).__await__()
        return "conn"

    async def __aenter__(self):
        return "conn"

    async def __aexit__(self, *exc_info):
        return False


def test_custom_awaitable_is_returned_unchanged(sink):
    pooled = PooledConnection()
    traced = _tw_function("db.py", "", "acquire")(lambda: pooled)

    async def scenario():
        async with traced() as conn:
            entered = conn
        return entered, await traced()

    assert traced() is pooled
    assert asyncio.run(scenario()) == ("conn", "conn")
    assert sink.lines[:2] == [
        "ENTER|FUNCTION|db.py||acquire|[]",
        'EXIT|FUNCTION|db.py||acquire|{"name":"pool"}',
    ]


def test_enter_waits_until_coroutines_and_generators_run(sink):
    async def fetch():
        return 1

    def numbers():
        yield 1

    pending = _tw_function("lazy.py", "", "fetch")(fetch)()
    created = _tw_generator("lazy.py", "", "numbers")(numbers)()
    assert sink.lines == []

    assert asyncio.run(pending) == 1
    assert next(created) == 1
    created.close()
    assert [line.split("|")[4] for line in sink.lines if line.startswith("ENTER")] == ["fetch", "numbers"]


def test_returned_future_is_the_same_object(sink):
    async def scenario():
        future = asyncio.get_running_loop().create_future()
        traced = _tw_function("jobs.py", "", "submit")(lambda: future)
        result = traced()
        assert result is future
        future.set_result("done")
        await asyncio.sleep(0)
        return await result

    assert asyncio.run(scenario()) == "done"
    assert sink.lines == [
        "ENTER|FUNCTION|jobs.py||submit|[]",
        'EXIT|FUNCTION|jobs.py||submit|"done"',
    ]


def test_generator_logs_completion_marker(sink):
    def countdown(start):
        while start:
            yield start
            start -= 1

    traced = _tw_generator("gen.py", "", "countdown")(countdown)

    assert list(traced(3)) == [3, 2, 1]
    assert sink.lines == [
        "ENTER|FUNCTION|gen.py||countdown|[3]",
        "EXIT|FUNCTION|gen.py||countdown|[generator completed]",
    ]


def test_generator_forwards_send_and_close(sink):
    def echo():
        received = yield "ready"
        while True:
            received = yield received * 2

    traced = _tw_generator("gen.py", "", "echo")(echo)()

    assert next(traced) == "ready"
    assert traced.send(5) == 10
    traced.close()
    assert sink.lines[-1] == "EXIT|FUNCTION|gen.py||echo|[generator closed]"


def test_generator_error_is_reraised(sink):
    def broken():
        yield 1
        raise LedgerError("bad row")

    traced = _tw_generator("gen.py", "", "broken")(broken)

    with pytest.raises(LedgerError):
        list(traced())
    assert sink.lines[-1] == 'ERROR|FUNCTION|gen.py||broken|"LedgerError: bad row"'


def test_async_generator_is_forwarded(sink):
    async def ticks(count):
        for index in range(count):
            yield index

    traced = _tw_generator("gen.py", "", "ticks")(ticks)

    async def collect():
        return [value async for value in traced(3)]

    assert asyncio.run(collect()) == [0, 1, 2]
    assert sink.lines == [
        "ENTER|FUNCTION|gen.py||ticks|[3]",
        "EXIT|FUNCTION|gen.py||ticks|[generator completed]",
    ]


def test_endpoint_logs_snapshot_and_status(sink):
    def read_item(item_id):
        return ("found", 201)

    traced = _tw_endpoint("GET", "/items/{item_id}", "main.py")(read_item)

    assert traced(item_id=3) == ("found", 201)
    assert sink.lines[0] == 'ENTER|ENDPOINT|GET|/items/{item_id}|main.py|{"params":{"item_id":3},"query":{},"body":null}'
    assert sink.lines[1].startswith('EXIT|ENDPOINT|GET|/items/{item_id}|main.py|{"status":201,"duration_ms":')


def test_endpoint_reads_request_object(sink):
    request = FakeRequest(path_params={"item_id": "7"}, query_params={"q": "lamp"})
    traced = _tw_endpoint("GET", "/items/{item_id}", "main.py")(lambda req: FakeResponse(404))

    assert traced(request).status_code == 404
    assert sink.lines[0].endswith('|{"params":{"item_id":"7"},"query":{"q":"lamp"},"body":null}')
    assert '"status":404' in sink.lines[1]


def test_async_endpoint_error(sink):
    async def create(payload):
        raise LedgerError("conflict")

    traced = _tw_endpoint("POST", "/users", "main.py")(create)

    with pytest.raises(LedgerError):
        asyncio.run(traced(payload={"name": "ada"}))
    assert sink.lines == [
        'ENTER|ENDPOINT|POST|/users|main.py|{"params":{"payload":{"name":"ada"}},"query":{},"body":null}',
        'ERROR|ENDPOINT|POST|/users|main.py|"LedgerError: conflict"',
    ]


def test_endpoint_reference_forwards_and_logs_name(sink):
    def list_items(limit):
        return ["a"] * limit

    traced = _tw_endpoint_ref("GET", "/items", "main.py", "list_items")(list_items)

    assert traced(2) == ["a", "a"]
    assert sink.lines == ["ENTER|ENDPOINT|GET|/items|main.py|list_items"]


def test_endpoint_reference_keeps_async_handlers_async(sink):
    async def ping():
        return "pong"

    traced = _tw_endpoint_ref("GET", "/ping", "main.py", "ping")(ping)

    assert inspect.iscoroutinefunction(traced)
    assert asyncio.run(traced()) == "pong"


def test_endpoint_reference_leaves_classes_and_values_alone():
    class ItemView:
        pass

    wrap = _tw_endpoint_ref("GET", "/*", "main.py", "ItemView")
    assert wrap(ItemView) is ItemView
    assert wrap("/prefix") == "/prefix"


def test_failing_sink_never_breaks_the_call():
    def explode(line):
        raise OSError("stdout closed")

    set_sink(explode)
    traced = _tw_function("calc.py", "", "double")(lambda value: value * 2)

    assert traced(4) == 8


def test_default_sink_prints_to_stdout(capsys):
    set_sink(None)
    _tw_function("calc.py", "", "one")(lambda: 1)()

    assert capsys.readouterr().out.splitlines() == [
        "ENTER|FUNCTION|calc.py||one|[]",
        "EXIT|FUNCTION|calc.py||one|1",
    ]


def test_sink_can_target_stderr(monkeypatch, capsys):
    monkeypatch.setenv("TRACE_WEAVER_SINK", "stderr")
    _tw_default_sink()("ENTER|FUNCTION|a.py||f|[]")

    assert capsys.readouterr().err == "ENTER|FUNCTION|a.py||f|[]\n"


def test_sink_can_target_logging(monkeypatch, caplog):
    monkeypatch.setenv("TRACE_WEAVER_SINK", "logging")
    caplog.set_level(logging.INFO, logger="trace_weaver.events")

    _tw_default_sink()("EXIT|FUNCTION|a.py||f|1")

    assert [record.getMessage() for record in caplog.records] == ["EXIT|FUNCTION|a.py||f|1"]
    assert runtime.get_sink() is not None
