"""
test_facade.py - Tests for the public engine entry point and its factory.
"""

import asyncio
import os
import pytest

from fakes import FAST_SETTINGS, InMemoryRecordService, make_engine
from hybrid_sync.config import EngineSettings, KEY_NOTES, KEY_QUIZZES
from hybrid_sync.errors import ConfigurationError
from hybrid_sync.facade import create_engine
from hybrid_sync.remote.http_service import HTTPRecordService
from hybrid_sync.schema import NOTES
from hybrid_sync.scheduler import tombstone_key
from hybrid_sync.store import MemoryBackend, MemoryStore, SQLiteStore


class TestCreateEngine:

    def test_requires_a_remote(self):
        with pytest.raises(ConfigurationError) as exc_info:
            create_engine(store=MemoryStore(), settings=EngineSettings())
        assert exc_info.value.context["setting"] == "remote_url"

    def test_builds_http_service_from_settings(self):
        engine = create_engine(settings=EngineSettings(remote_url="https://api.example.test"))

        assert isinstance(engine._owned_service, HTTPRecordService)
        assert isinstance(engine.store, MemoryStore)
        assert sorted(engine.collection_keys) == sorted([
            "studyflow-notes", "studyflow-flashcards", "studyflow-quizzes", "studyflow-ai-chats",
        ])
        asyncio.run(engine.shutdown())

    def test_sqlite_store_from_settings(self, temp_dir):
        path = os.path.join(temp_dir, "engine.db")
        engine = create_engine(service=InMemoryRecordService(), settings=EngineSettings(store_path=path))

        assert isinstance(engine.store, SQLiteStore)
        engine.save(KEY_NOTES, [{"local_id": 1, "title": "On disk"}])
        asyncio.run(engine.shutdown())

        with SQLiteStore(path) as store:
            assert store.read_list(KEY_NOTES)[0]["title"] == "On disk"

    def test_unopenable_store_is_configuration_error(self, temp_dir):
        path = os.path.join(temp_dir, "no", "such", "dir", "engine.db")
        with pytest.raises(ConfigurationError) as exc_info:
            create_engine(service=InMemoryRecordService(), settings=EngineSettings(store_path=path))
        assert exc_info.value.context["setting"] == "store_path"

    def test_duplicate_schemas_rejected(self):
        with pytest.raises(ConfigurationError):
            make_engine(schemas=(NOTES, NOTES))


class TestDataAccess:

    def setup_method(self):
        self.service = InMemoryRecordService()
        self.engine = make_engine(service=self.service)

    def test_unknown_collection_key(self):
        with pytest.raises(ConfigurationError):
            self.engine.load("studyflow-unknown")
        with pytest.raises(ConfigurationError):
            self.engine.save("studyflow-unknown", [])
        with pytest.raises(ConfigurationError):
            self.engine.delete_record("studyflow-unknown", 1)
        with pytest.raises(ConfigurationError):
            self.engine.subscribe("studyflow-unknown", lambda key, value: None)

    def test_load_empty_collection(self):
        assert self.engine.load(KEY_QUIZZES) == []

    def test_new_local_id_is_unused(self):
        self.engine.save(KEY_NOTES, [{"local_id": 10 ** 14, "title": "Far future"}])
        assert self.engine.new_local_id(KEY_NOTES) > 10 ** 14

    def test_subscribe_and_unsubscribe(self):
        seen = []
        unsubscribe = self.engine.subscribe(KEY_NOTES, lambda key, value: seen.append(len(value)))

        self.engine.save(KEY_NOTES, [{"local_id": 1, "title": "A"}])
        unsubscribe()
        self.engine.save(KEY_NOTES, [{"local_id": 1, "title": "A"}, {"local_id": 2, "title": "B"}])

        assert seen == [1]

    def test_subscriber_sees_other_instance_changes(self):
        backend = MemoryBackend()
        first = make_engine(service=self.service, store=MemoryStore(backend=backend))
        second = make_engine(service=self.service, store=MemoryStore(backend=backend))
        seen = []

        async def run():
            first.subscribe(KEY_NOTES, lambda key, value: seen.append(value))
            await first.initialize_for_principal("user-1")
            await asyncio.sleep(0.02)
            second.save(KEY_NOTES, [{"local_id": 1, "title": "From the other tab"}])
            await asyncio.sleep(0.05)
            pending = first.get_status().pending_count
            await first.shutdown()
            await second.shutdown()
            return pending

        pending = asyncio.run(run())

        assert seen and seen[-1][0]["title"] == "From the other tab"
        assert pending == 0


class TestSession:

    def setup_method(self):
        self.service = InMemoryRecordService()
        self.engine = make_engine(service=self.service)

    def test_on_ready_after_initialize(self):
        calls = []

        async def run():
            self.engine.on_ready(lambda: calls.append("queued"))
            before = list(calls)
            await self.engine.initialize_for_principal("user-1")
            self.engine.on_ready(lambda: calls.append("immediate"))
            await self.engine.shutdown()
            return before

        before = asyncio.run(run())

        assert before == []
        assert calls == ["queued", "immediate"]
        assert self.engine.is_ready

    def test_failing_ready_callback_contained(self):
        calls = []

        def broken():
            raise RuntimeError("ui bug")

        async def run():
            self.engine.on_ready(broken)
            self.engine.on_ready(lambda: calls.append("second"))
            await self.engine.initialize_for_principal("user-1")
            await self.engine.shutdown()

        asyncio.run(run())

        assert calls == ["second"]

    def test_sign_out_drops_queued_ready_callbacks(self):
        calls = []

        async def run():
            self.engine.on_ready(lambda: calls.append("user-1 screen"))
            self.engine.clear_principal_data(wipe_local=True)
            await self.engine.initialize_for_principal("user-2")
            self.engine.on_ready(lambda: calls.append("user-2 screen"))
            await self.engine.shutdown()

        asyncio.run(run())

        assert calls == ["user-2 screen"]

    def test_clear_keeps_local_data_by_default(self):
        self.engine.save(KEY_NOTES, [{"local_id": 1, "title": "Kept"}])
        self.engine.clear_principal_data()

        assert len(self.engine.load(KEY_NOTES)) == 1
        assert self.engine.get_status().principal_id is None
        assert not self.engine.is_ready

    def test_clear_with_wipe_removes_collections_and_tombstones(self):
        self.engine.store.write(tombstone_key(KEY_NOTES), {"3f2b8c1e-9d4a-4f6b-8a7c-2e1d0c9b8a76": False})
        self.engine.save(KEY_NOTES, [{"local_id": 1, "title": "Gone"}])

        self.engine.clear_principal_data(wipe_local=True)

        assert self.engine.load(KEY_NOTES) == []
        assert self.engine.store.read(tombstone_key(KEY_NOTES)) is None

    def test_status_before_sign_in(self):
        status = self.engine.get_status()

        assert status.principal_id is None
        assert status.pending_count == 0
        assert status.online

    def test_offline_engine_reports_offline(self):
        engine = make_engine(service=self.service, settings=FAST_SETTINGS, online=False)
        assert engine.get_status().state.value == "offline"
