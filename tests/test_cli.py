import io
import json

import pytest

from trace_weaver import cli


def _run(argv):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)
    return excinfo.value.code


def test_build_command_prints_json_report(tmp_path, capsys):
    source = tmp_path / "app"
    source.mkdir()
    (source / "main.py").write_text("def hello():\n    return 'hi'\n", encoding="utf-8")

    code = _run(["build", "--source", str(source), "--output", str(tmp_path / "out"), "--json"])

    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["summary"]["files"]["instrumented"] == 1
    assert payload["files"][0]["path"] == "main.py"
    assert (tmp_path / "out" / "main.py").exists()


def test_build_command_text_output_lists_failures(tmp_path, capsys):
    source = tmp_path / "app"
    source.mkdir()
    (source / "bad.py").write_text("def broken(:\n", encoding="utf-8")

    code = _run(["build", "--source", str(source), "--output", str(tmp_path / "out")])

    out = capsys.readouterr().out
    assert code == 1
    assert "1 failed" in out
    assert "- bad.py:" in out


def test_build_command_refuses_unsafe_output(tmp_path, capsys):
    code = _run(["build", "--source", str(tmp_path), "--output", str(tmp_path)])

    assert code == 2
    assert "Build refused" in capsys.readouterr().err


def test_instrument_command_prints_instrumented_text(tmp_path, capsys):
    path = tmp_path / "service.py"
    path.write_text("def ping():\n    return 'pong'\n", encoding="utf-8")

    assert _run(["instrument", str(path)]) == 0
    assert "@_tw_function('service.py', '', 'ping')\ndef ping():" in capsys.readouterr().out


def test_instrument_command_reports_parse_errors(tmp_path, capsys):
    path = tmp_path / "broken.py"
    path.write_text("def broken(:\n", encoding="utf-8")

    assert _run(["instrument", str(path)]) == 1
    assert "Failed to parse" in capsys.readouterr().err


def test_instrument_command_reports_undecodable_files(tmp_path, capsys):
    path = tmp_path / "latin.py"
    path.write_bytes(b"x = '\xff\xfe'\n")

    assert _run(["instrument", str(path)]) == 1
    assert "Failed to parse" in capsys.readouterr().err


def test_events_command_parses_log_file(tmp_path, capsys):
    log = tmp_path / "run.log"
    log.write_text(
        "server started\n"
        "ENTER|FUNCTION|main.py||add|[2,3]\n"
        "EXIT|FUNCTION|main.py||add|5\n",
        encoding="utf-8",
    )

    assert _run(["events", str(log), "--json"]) == 0
    events = json.loads(capsys.readouterr().out)
    assert [event["phase"] for event in events] == ["ENTER", "EXIT"]
    assert events[1]["payload"] == "5"


def test_events_command_reads_stdin(monkeypatch, capsys):
    monkeypatch.setattr("sys.stdin", io.StringIO('ENTER|ENDPOINT|GET|/items|main.py|{"params":{}}\n'))

    assert _run(["events"]) == 0
    assert "GET /items (main.py)" in capsys.readouterr().out


def test_missing_command_prints_help(capsys):
    assert _run([]) == 1
    assert "usage: trace-weaver" in capsys.readouterr().out
