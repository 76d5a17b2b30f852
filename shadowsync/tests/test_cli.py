# shadowsync/tests/test_cli.py
import json
import logging
import os

import pytest

from shadowsync import cli


@pytest.fixture(autouse=True)
def _isolated(monkeypatch):
    for key in list(os.environ):
        if key.startswith("SHADOWSYNC_"):
            monkeypatch.delenv(key, raising=False)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_show_config_redacts(monkeypatch, capsys):
    monkeypatch.setenv("SHADOWSYNC_SHADOW_TOKEN", "s3cret")
    monkeypatch.setenv("SHADOWSYNC_BATCH_SIZE", "4")
    assert cli.main(["show-config"]) == cli.EXIT_OK
    out = json.loads(capsys.readouterr().out)
    assert out["shadow_token"] == "<redacted>"
    assert out["batch_size"] == 4


def test_relay_without_configuration_exits_2(capsys):
    assert cli.main(["relay"]) == cli.EXIT_CONFIG
    assert "primary_rpc_url" in capsys.readouterr().err


def test_broken_config_file_exits_2(tmp_path, capsys):
    path = tmp_path / "c.yaml"
    path.write_text("unknown_key: 1\n")
    assert cli.main(["--config", str(path), "show-config"]) == cli.EXIT_CONFIG


def test_serve_requires_owner_and_mediator(capsys):
    assert cli.main(["serve"]) == cli.EXIT_CONFIG
    assert "admin_owner" in capsys.readouterr().err


def test_unknown_command_is_usage_error():
    with pytest.raises(SystemExit) as ei:
        cli.main(["bogus"])
    assert ei.value.code == 2
