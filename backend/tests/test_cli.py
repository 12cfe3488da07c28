"""CLI smoke tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from scope_memory.cli.main import app
from scope_memory.db.store import get_scope_dir

runner = CliRunner()


@pytest.fixture(autouse=True)
def hashed_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCOPEMEM_EMBEDDING_PROVIDER", "hashed")
    monkeypatch.setenv("SCOPEMEM_EMBEDDING_MODEL", "hashed-bow")
    monkeypatch.setenv("SCOPEMEM_EMBEDDING_DIMENSIONS", "32")


def test_sync_search_and_stats(root_dir: Path) -> None:
    scope_dir = get_scope_dir(root_dir, "cli-scope")
    scope_dir.mkdir(parents=True)
    (scope_dir / "todo.md").write_text("buy oat milk on friday", encoding="utf-8")

    synced = runner.invoke(app, ["sync", "cli-scope"])
    assert synced.exit_code == 0, synced.output
    assert json.loads(synced.stdout)["files_indexed"] == 1

    found = runner.invoke(app, ["search", "cli-scope", "oat milk", "--k", "2"])
    assert found.exit_code == 0, found.output
    payload = json.loads(found.stdout)
    assert payload["results"][0]["path"] == "todo.md"

    stats = runner.invoke(app, ["stats", "cli-scope"])
    assert stats.exit_code == 0, stats.output
    assert json.loads(stats.stdout)["active_chunks"] == 1


def test_provider_errors_exit_non_zero(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCOPEMEM_EMBEDDING_PROVIDER", "openai")
    result = runner.invoke(app, ["sync", "cli-scope"])
    assert result.exit_code == 1
