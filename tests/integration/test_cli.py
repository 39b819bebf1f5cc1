"""Tests for the ai-memory command line."""

import json

import pytest

from ai_memory.main import main
from ai_memory.persistence.migrations import latest_version


@pytest.fixture
def db_env(tmp_path, monkeypatch):
    db_path = tmp_path / "AI-Memory" / "memory.db"
    monkeypatch.setenv("AI_MEMORY_DB_PATH", str(db_path))
    monkeypatch.setenv("AI_MEMORY_EMBEDDING_PROVIDER", "hash")
    monkeypatch.setenv("AI_MEMORY_TOKEN_COUNTER", "chars")
    # Leave the root logger to pytest.
    monkeypatch.setattr("ai_memory.main.configure_logging", lambda **kwargs: None)
    return db_path


@pytest.mark.integration
class TestCli:
    def test_migrate(self, db_env, capsys):
        assert main(["migrate"]) == 0

        out = capsys.readouterr().out
        assert f"Schema at version {latest_version()}" in out
        assert db_env.exists()

    def test_stats(self, db_env, capsys):
        assert main(["--db", str(db_env), "stats"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["state"]["active"] is True
        assert data["counts"]["DECISION"] == 0

    def test_select_on_empty_store(self, db_env, capsys):
        assert main(["select", "sqlite", "--budget", "100"]) == 0

        assert "0/0 entries, 0/100 tokens" in capsys.readouterr().err
