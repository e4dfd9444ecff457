import itertools
import sys
import textwrap
import types
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from trace_weaver import runtime  # noqa: E402
from trace_weaver.emitter import instrument_source  # noqa: E402
from trace_weaver.models import LogEvent  # noqa: E402

_module_ids = itertools.count()


class SinkRecorder:
    def __init__(self) -> None:
        self.lines: list[str] = []

    def __call__(self, line: str) -> None:
        self.lines.append(line)

    def events(self) -> list[LogEvent]:
        return [LogEvent.parse(line) for line in self.lines]

    def clear(self) -> None:
        self.lines.clear()


@pytest.fixture(autouse=True)
def default_sink(monkeypatch):
    monkeypatch.delenv("TRACE_WEAVER_SINK", raising=False)
    yield
    runtime.set_sink(None)


@pytest.fixture
def recorder():
    return SinkRecorder()


@pytest.fixture
def load_instrumented(monkeypatch):
    """Instrument a source text and execute it as a fresh module registered in sys.modules."""

    def _load(source: str, file_name: str = "main.py", sink=None):
        code = instrument_source(textwrap.dedent(source), file_name=file_name)
        name = f"instrumented_{next(_module_ids)}_{Path(file_name).stem}"
        module = types.ModuleType(name)
        module.__file__ = file_name
        monkeypatch.setitem(sys.modules, name, module)
        exec(compile(code, file_name, "exec"), module.__dict__)
        if sink is not None:
            module._tw_sink = sink
        return module

    return _load
