"""
test_identity.py - Tests for local/remote identifier reconciliation.
"""

import uuid

from hybrid_sync.identity import IdentifierReconciler, derive_stable_local_id, is_remote_id
from hybrid_sync.store.memory import MemoryStore

REMOTE_ID = "3f2b8c1e-9d4a-4f6b-8a7c-2e1d0c9b8a76"


class TestRemoteIdFormat:

    def test_accepts_uuid_versions_one_to_five(self):
        assert is_remote_id(str(uuid.uuid4()))
        assert is_remote_id(str(uuid.uuid1()))
        assert is_remote_id(REMOTE_ID.upper())

    def test_rejects_everything_else(self):
        assert not is_remote_id(None)
        assert not is_remote_id(12345)
        assert not is_remote_id("not-a-uuid")
        assert not is_remote_id("00000000-0000-0000-0000-000000000000")
        assert not is_remote_id(REMOTE_ID.replace("-", ""))


class TestStableLocalId:

    def test_deterministic_and_in_safe_range(self):
        first = derive_stable_local_id(REMOTE_ID)
        assert first == derive_stable_local_id(REMOTE_ID)
        assert 0 < first < 2 ** 53

    def test_case_insensitive(self):
        assert derive_stable_local_id(REMOTE_ID) == derive_stable_local_id(REMOTE_ID.upper())

    def test_distinct_ids_and_salts_differ(self):
        other = str(uuid.uuid4())
        assert derive_stable_local_id(REMOTE_ID) != derive_stable_local_id(other)
        assert derive_stable_local_id(REMOTE_ID) != derive_stable_local_id(REMOTE_ID, salt=1)

    def test_resolve_avoids_collision(self):
        taken = [{"local_id": derive_stable_local_id(REMOTE_ID), "title": "unrelated"}]
        resolved = IdentifierReconciler.resolve_local_id(taken, REMOTE_ID)
        assert resolved == derive_stable_local_id(REMOTE_ID, salt=1)

    def test_resolve_without_collision_is_canonical(self):
        assert IdentifierReconciler.resolve_local_id([], REMOTE_ID) == derive_stable_local_id(REMOTE_ID)


class TestNewLocalId:

    def test_bumped_above_existing_ids(self):
        records = [{"local_id": 10 ** 15}, {"local_id": "legacy-string"}]
        assert IdentifierReconciler.new_local_id(records) == 10 ** 15 + 1

    def test_clock_based_when_empty(self):
        assert IdentifierReconciler.new_local_id([]) > 0


class TestAttachRemoteId:

    def setup_method(self):
        self.store = MemoryStore()
        self.store.write("notes", [{"local_id": 1, "title": "A"}, {"local_id": 2, "title": "B"}])
        self.reconciler = IdentifierReconciler(self.store)
        self.events = []
        self.store.subscribe("notes", lambda key, value: self.events.append(value))

    def test_back_fills_matching_record(self):
        assert self.reconciler.attach_remote_id("notes", 2, REMOTE_ID)

        records = self.store.read_list("notes")
        assert records[1] == {"local_id": 2, "title": "B", "remote_id": REMOTE_ID}
        assert "remote_id" not in records[0]
        assert len(self.events) == 1

    def test_second_attach_does_not_rewrite(self):
        self.reconciler.attach_remote_id("notes", 1, REMOTE_ID)
        assert self.reconciler.attach_remote_id("notes", 1, REMOTE_ID)
        assert len(self.events) == 1

    def test_malformed_remote_id_refused(self):
        assert not self.reconciler.attach_remote_id("notes", 1, "temp-123")
        assert all("remote_id" not in r for r in self.store.read_list("notes"))
        assert self.events == []

    def test_unknown_local_id(self):
        assert not self.reconciler.attach_remote_id("notes", 99, REMOTE_ID)
        assert self.events == []

    def test_bulk_attach(self):
        other = str(uuid.uuid4())
        assert self.reconciler.attach_remote_ids("notes", {1: REMOTE_ID, 2: other}) == 2
        assert [r["remote_id"] for r in self.store.read_list("notes")] == [REMOTE_ID, other]
        assert len(self.events) == 1

    def test_find_by_remote_id(self):
        self.reconciler.attach_remote_id("notes", 2, REMOTE_ID)
        found = IdentifierReconciler.find_by_remote_id(self.store.read_list("notes"), REMOTE_ID)
        assert found["local_id"] == 2
