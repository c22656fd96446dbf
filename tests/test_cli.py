import json
import logging

import pytest

from conftest import FakeTelemetry, proc
from examwatch import cli
from examwatch.models import Threat


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger("examwatch")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


def test_pretty_row_contains_fields():
    row = cli.pretty_row(Threat("suspicious_process", "high", "Suspicious process detected: kcalc", {"pid": 42}))
    assert "suspicious_process" in row
    assert "42" in row
    assert row.endswith("Suspicious process detected: kcalc")


def test_parser_requires_subcommand():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_scan_json_output(monkeypatch, capsys):
    adapter = FakeTelemetry(processes=[proc(20, "cheat")])
    monkeypatch.setattr("examwatch.engine.get_adapter", lambda timeouts=None: adapter)
    monkeypatch.setattr("examwatch.cli.load_signatures", lambda path: {"process_names": ["cheat"]})

    cli.main(["scan", "--json"])

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [d["type"] for d in lines] == ["signature_process"]
    assert lines[0]["details"] == {"pid": 20}


def test_bad_config_exits_with_error(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main(["scan", "--config", str(tmp_path / "missing.yaml")])
    assert exc.value.code == 2
    assert "error:" in capsys.readouterr().err


def test_inventory_json(monkeypatch, capsys):
    adapter = FakeTelemetry(applications=["AnyDesk"])
    monkeypatch.setattr("examwatch.cli.get_adapter", lambda timeouts=None: adapter)

    cli.main(["inventory", "--json"])

    report = json.loads(capsys.readouterr().out)
    assert report["summary"]["remote_control"]["installed"] == 1
