"""
Unit tests for the console scripts.
"""

import json
import os

import pytest

from firedoc import cli
from firedoc import config as config_module
from firedoc.indexes import Index, IndexSet


@pytest.fixture(autouse=True)
def memory_backend_env(monkeypatch, tmp_path):
    """Point the console scripts at a fresh memory backend."""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("FIREDOC_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("FIREDOC_BACKEND", "memory")
    monkeypatch.setattr(config_module, "_config", None)


@pytest.fixture
def index_file(tmp_path):
    indexes = IndexSet()
    indexes.add(Index.new("orders").asc("status").desc("createdAt"))
    indexes.add(Index.new("orders").asc("status").desc("createdAt"))
    path = tmp_path / "firestore.indexes.json"
    indexes.write_file(path)
    return path


class TestIndexesCommand:
    """Tests for firedoc-indexes."""

    def test_summary(self, index_file, capsys):
        cli.indexes([str(index_file)])
        out = capsys.readouterr().out
        assert "2 indexes" in out
        assert "1 duplicate" in out

    def test_normalized_output(self, index_file, tmp_path):
        target = tmp_path / "normalized.json"
        cli.indexes([str(index_file), "--output", str(target)])
        assert IndexSet.read_file(target) == IndexSet.read_file(index_file)

    def test_stdout_output(self, index_file, capsys):
        cli.indexes([str(index_file), "-o", "-"])
        out = capsys.readouterr().out
        payload = json.loads(out[out.index("{"):])
        assert payload["indexes"][0]["collectionGroup"] == "orders"

    def test_unreadable_file(self, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text("{")
        with pytest.raises(SystemExit) as excinfo:
            cli.indexes([str(bad)])
        assert excinfo.value.code == 1


class TestStoreCommands:
    """Tests for firedoc-health and firedoc-audit against a memory backend."""

    def test_health_json(self, capsys):
        cli.health_check(["--json"])
        health = json.loads(capsys.readouterr().out)
        assert health["status"] == "healthy"
        assert health["backend"] == "MemoryBackend"

    def test_audit_clean(self, capsys):
        cli.audit([])
        assert "consistent" in capsys.readouterr().out

    def test_create_db_requires_project(self):
        with pytest.raises(SystemExit) as excinfo:
            cli.create_db(["games"])
        assert excinfo.value.code == 1
