import json

import pytest

import main


@pytest.fixture
def cli(tmp_path, monkeypatch, capsys):
    monkeypatch.delenv("TILLBOOK_SYNC_URL", raising=False)
    monkeypatch.delenv("TILLBOOK_SYNC_API_KEY", raising=False)
    base = ["--db", str(tmp_path / "cli.db"), "--config", str(tmp_path / "config.json")]

    def run(*args):
        code = main.main([*base, *args])
        out = capsys.readouterr().out
        return code, (json.loads(out) if out.strip() else None)

    return run


def test_status_prints_json(cli):
    code, payload = cli("status")

    assert code == 0
    assert payload["pending"] == 0
    assert payload["isConfigured"] is False


def test_health_and_queue(cli):
    code, health = cli("health")
    assert code == 0
    assert health["status"] == "healthy"

    code, items = cli("queue", "--status", "pending")
    assert code == 0
    assert items == []


def test_sync_without_remote_reports_configuration_error(cli):
    code, payload = cli("sync")

    assert code == 1
    assert payload["success"] is False
    assert "not configured" in payload["error"]


def test_clear_requires_confirmation_for_unsynced_items(cli):
    code, payload = cli("clear", "--status", "pending")
    assert code == 2
    assert payload is None

    code, payload = cli("clear", "--status", "synced")
    assert code == 0
    assert payload == {"clearedCount": 0}


def test_disable_persists(cli, tmp_path):
    code, payload = cli("disable")

    assert code == 0
    assert payload == {"enabled": False}
    stored = json.loads((tmp_path / "config.json").read_text(encoding="utf-8"))
    assert stored["sync"]["enabled"] is False


def test_conflicts_list_is_empty_and_unknown_resolve_fails(cli):
    code, payload = cli("conflicts")
    assert code == 0
    assert payload == []

    code, payload = cli("resolve", "7", "--keep", "remote")
    assert code == 1
    assert payload["success"] is False
    assert "not found" in payload["error"]
