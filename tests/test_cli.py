"""
test_cli.py - Tests for the hybrid-sync command line.
"""

import json
import logging
import os
from unittest.mock import patch

from typer.testing import CliRunner

from fakes import InMemoryRecordService, make_engine
from hybrid_sync.cli.main import app
from hybrid_sync.config import KEY_FLASHCARDS, KEY_NOTES
from hybrid_sync.scheduler import tombstone_key
from hybrid_sync.store.sqlite_store import SQLiteStore

runner = CliRunner()


class TestLocalCommands:

    def setup_method(self):
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level

    def teardown_method(self):
        self.root.handlers = self.saved_handlers
        self.root.setLevel(self.saved_level)

    def _seed(self, path):
        with SQLiteStore(path) as store:
            store.write(KEY_NOTES, [
                {"local_id": 1, "title": "Synced", "remote_id": "3f2b8c1e-9d4a-4f6b-8a7c-2e1d0c9b8a76"},
                {"local_id": 2, "title": "Local only"},
            ])
            store.write(KEY_FLASHCARDS, [{"local_id": 1, "title": "Deck", "cards": []}])
            store.write(tombstone_key(KEY_NOTES), {"9a1b2c3d-4e5f-4a6b-8c7d-0e1f2a3b4c5d": False})

    def test_stats(self, temp_dir):
        path = os.path.join(temp_dir, "local.db")
        self._seed(path)

        result = runner.invoke(app, ["stats", path])

        assert result.exit_code == 0
        assert "studyflow-notes" in result.output
        assert "Total size" in result.output

    def test_missing_store(self, temp_dir):
        result = runner.invoke(app, ["stats", os.path.join(temp_dir, "absent.db")])

        assert result.exit_code == 1
        assert "No local store" in result.output

    def test_export(self, temp_dir):
        path = os.path.join(temp_dir, "local.db")
        output = os.path.join(temp_dir, "backup.json")
        self._seed(path)

        result = runner.invoke(app, ["export", path, "--output", output])

        assert result.exit_code == 0
        with open(output, encoding="utf-8") as f:
            data = json.load(f)
        assert [r["title"] for r in data["collections"][KEY_NOTES]] == ["Synced", "Local only"]
        assert data["collections"]["studyflow-quizzes"] == []
        assert "exported_at" in data

    def test_clear_requires_confirmation(self, temp_dir):
        path = os.path.join(temp_dir, "local.db")
        self._seed(path)

        result = runner.invoke(app, ["clear", path], input="n\n")

        assert result.exit_code != 0
        with SQLiteStore(path) as store:
            assert len(store.read_list(KEY_NOTES)) == 2

    def test_clear_with_yes(self, temp_dir):
        path = os.path.join(temp_dir, "local.db")
        self._seed(path)

        result = runner.invoke(app, ["clear", path, "--yes"])

        assert result.exit_code == 0
        assert "Cleared 3 key(s)" in result.output
        with SQLiteStore(path) as store:
            assert store.keys() == []


class TestSyncCommand:

    def setup_method(self):
        self.root = logging.getLogger()
        self.saved_handlers = list(self.root.handlers)
        self.saved_level = self.root.level
        self.service = InMemoryRecordService()

    def teardown_method(self):
        self.root.handlers = self.saved_handlers
        self.root.setLevel(self.saved_level)

    def _engine_factory(self, path):
        def factory(settings, token_provider):
            return make_engine(service=self.service, store=SQLiteStore(path))
        return factory

    def test_sync_pushes_local_records(self, temp_dir):
        path = os.path.join(temp_dir, "local.db")
        with SQLiteStore(path) as store:
            store.write(KEY_NOTES, [{"local_id": 1, "title": "From the CLI"}])

        with patch("hybrid_sync.cli.main.create_engine", self._engine_factory(path)):
            result = runner.invoke(app, ["sync", path, "https://api.example.test", "--principal", "user-1", "--show-metrics"])

        assert result.exit_code == 0, result.output
        assert "Sync completed successfully" in result.output
        assert "hybrid_sync_flush_total" in result.output
        assert [r["title"] for r in self.service.rows("user_notes")] == ["From the CLI"]
        with SQLiteStore(path) as store:
            assert store.read_list(KEY_NOTES)[0]["remote_id"]

    def test_sync_reports_unreachable_remote(self, temp_dir):
        path = os.path.join(temp_dir, "local.db")
        with SQLiteStore(path) as store:
            store.write(KEY_NOTES, [{"local_id": 1, "title": "Stuck locally"}])
        self.service.offline = True

        with patch("hybrid_sync.cli.main.create_engine", self._engine_factory(path)):
            result = runner.invoke(app, ["sync", path, "https://api.example.test", "--principal", "user-1"])

        assert result.exit_code == 1
        assert "Sync incomplete" in result.output

    def test_sync_with_unopenable_store(self, temp_dir):
        path = os.path.join(temp_dir, "no", "such", "dir", "local.db")

        result = runner.invoke(app, ["sync", path, "https://api.example.test", "--principal", "user-1"])

        assert result.exit_code == 1
        assert "Cannot open local store" in result.output
