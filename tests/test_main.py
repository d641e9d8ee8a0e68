from __future__ import annotations

import sys
from types import SimpleNamespace

import pytest

import slack_flow.__main__ as app_main
from slack_flow.config import ConfigurationError, RelaySettings
from slack_flow.models import ConnectionInfo
from slack_flow.slack_client import SlackApiError


class _StubClient:
    def __init__(self, info=None, error=None):
        self.info = info
        self.error = error
        self.closed = False

    def test_connection(self):
        if self.error is not None:
            raise self.error
        return self.info

    def close(self):
        self.closed = True


def test_version_mode(monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["slack-flow", "version"])
    app_main.main()
    assert capsys.readouterr().out.startswith("slack-flow ")


def test_config_error_exits_with_message(monkeypatch, capsys):
    def _broken(path):
        raise ConfigurationError("Config file not found: nope.yaml")

    monkeypatch.setattr(app_main, "load_settings", _broken)
    with pytest.raises(SystemExit) as exc:
        app_main._load("nope.yaml", for_daemon=True)
    assert exc.value.code == 1
    assert "Config file not found" in capsys.readouterr().err


def test_daemon_mode_requires_projects(monkeypatch, capsys):
    monkeypatch.setattr(app_main, "load_settings", lambda path: RelaySettings(bot_token="xoxb"))
    with pytest.raises(SystemExit):
        app_main._load(None, for_daemon=True)
    assert "No projects configured" in capsys.readouterr().err


def test_test_connection_reports_identity(monkeypatch, capsys):
    stub = _StubClient(info=ConnectionInfo(ok=True, bot_user_id="UBOT", bot_id="B1", bot_name="relay"))
    monkeypatch.setattr(app_main, "SlackClient", lambda *args, **kwargs: stub)

    code = app_main._test_connection(SimpleNamespace(bot_token="xoxb", slack_api_base_url="https://x"))

    out = capsys.readouterr().out
    assert code == 0
    assert "UBOT" in out
    assert stub.closed is True


def test_test_connection_failure(monkeypatch, capsys):
    stub = _StubClient(error=SlackApiError("auth.test", "invalid_auth"))
    monkeypatch.setattr(app_main, "SlackClient", lambda *args, **kwargs: stub)

    code = app_main._test_connection(SimpleNamespace(bot_token="bad", slack_api_base_url="https://x"))

    assert code == 1
    assert "invalid_auth" in capsys.readouterr().err
    assert stub.closed is True
