"""
Quota migration: backfill and validation against ground truth.

- Backfill seeds free-tier subscriptions from real counts and skips existing ones.
- Re-running backfill changes nothing.
- Validation is read-only and reports drift and missing subscriptions.
- One tenant's failure is recorded; the batch carries on.
"""
import pytest

from services.quota_errors import StoreUnavailable
from services.quota_migration import migrate_existing_tenants, validate_migration
from services.tenant_scope import SchoolScope, TeacherScope, get_tenant_scope
from services.usage_ledger import SUBSCRIPTIONS_COLLECTION

from fakes import InMemoryDocumentStore

pytestmark = pytest.mark.asyncio


def _seed_school(store, teachers, exams_per_teacher, students=0, school_id="school-1"):
    store.seed("users", [
        {"id": teacher_id, "name": f"Teacher {teacher_id}", "role": "teacher", "school_id": school_id, "status": "active"}
        for teacher_id in teachers
    ])
    store.seed("exams", [
        {"id": f"{teacher_id}-exam-{i}", "teacher_id": teacher_id}
        for teacher_id, count in exams_per_teacher.items()
        for i in range(count)
    ])
    store.seed("users", [
        {"id": f"{school_id}-student-{i}", "role": "student", "school_id": school_id, "status": "active"}
        for i in range(students)
    ])


class TestBackfill:
    async def test_free_plan_seeded_from_ground_truth(self, store):
        store.seed("users", [{"id": "T1", "name": "Empty Teacher", "role": "teacher", "school_id": None}])

        result = await migrate_existing_tenants(store=store, scope=TeacherScope())
        doc = store.raw(SUBSCRIPTIONS_COLLECTION, "T1")

        assert result.total == 1
        assert result.created == 1
        assert doc["plan_tier"] == "free"
        assert doc["status"] == "active"
        assert doc["current_subjects"] == 0
        assert doc["current_students"] == 0
        assert doc["subject_limit"] == 3
        assert doc["student_limit"] == 10
        assert doc["tenant_name"] == "Empty Teacher"

    async def test_counts_exams_and_active_school_students(self, store):
        _seed_school(store, ["t1"], {"t1": 4}, students=12)
        store.seed("users", [{"id": "gone", "role": "student", "school_id": "school-1", "status": "inactive"}])

        await migrate_existing_tenants(store=store, scope=TeacherScope())
        doc = store.raw(SUBSCRIPTIONS_COLLECTION, "t1")

        # Over-limit counts are seeded as-is
        assert doc["current_subjects"] == 4
        assert doc["current_students"] == 12

    async def test_backfill_is_idempotent(self, store):
        _seed_school(store, ["t1", "t2"], {"t1": 2, "t2": 1}, students=3)

        first = await migrate_existing_tenants(store=store, scope=TeacherScope())
        snapshot = {k: dict(v) for k, v in store.collections[SUBSCRIPTIONS_COLLECTION].items()}
        second = await migrate_existing_tenants(store=store, scope=TeacherScope())

        assert (first.created, first.skipped) == (2, 0)
        assert (second.total, second.created, second.skipped, second.failed) == (2, 0, 2, 0)
        assert store.collections[SUBSCRIPTIONS_COLLECTION] == snapshot

    async def test_existing_subscription_is_never_overwritten(self, store):
        _seed_school(store, ["t1"], {"t1": 5})
        store.seed(SUBSCRIPTIONS_COLLECTION, [
            {"id": "t1", "tenant_id": "t1", "plan_tier": "vip", "current_subjects": 2, "current_students": 0},
        ])

        result = await migrate_existing_tenants(store=store, scope=TeacherScope())
        doc = store.raw(SUBSCRIPTIONS_COLLECTION, "t1")

        assert result.skipped == 1
        assert doc["plan_tier"] == "vip"
        assert doc["current_subjects"] == 2

    async def test_partial_failure_is_recorded(self):
        class FlakyStore(InMemoryDocumentStore):
            async def count_where(self, collection, query):
                if query.get("teacher_id") == "teacher2":
                    raise StoreUnavailable("count exams", ConnectionError("connection reset"))
                return await super().count_where(collection, query)

        store = FlakyStore()
        store.seed("users", [
            {"id": "teacher1", "name": "One", "role": "teacher"},
            {"id": "teacher2", "name": "Two", "role": "teacher"},
        ])

        result = await migrate_existing_tenants(store=store, scope=TeacherScope())

        assert result.total == 2
        assert result.created == 1
        assert result.failed == 1
        assert result.errors[0].tenant_id == "teacher2"
        assert result.errors[0].tenant_name == "Two"
        assert "connection reset" in result.errors[0].error
        assert store.raw(SUBSCRIPTIONS_COLLECTION, "teacher1") is not None
        assert store.raw(SUBSCRIPTIONS_COLLECTION, "teacher2") is None

    async def test_failed_insert_is_recorded(self):
        class FlakyStore(InMemoryDocumentStore):
            async def create(self, collection, doc_id, fields):
                if collection == SUBSCRIPTIONS_COLLECTION and doc_id == "teacher2":
                    raise StoreUnavailable("insert subscriptions", ConnectionError("write concern timeout"))
                return await super().create(collection, doc_id, fields)

        store = FlakyStore()
        store.seed("users", [
            {"id": "teacher1", "name": "One", "role": "teacher"},
            {"id": "teacher2", "name": "Two", "role": "teacher"},
        ])

        result = await migrate_existing_tenants(store=store, scope=TeacherScope())

        assert (result.total, result.created, result.skipped, result.failed) == (2, 1, 0, 1)
        assert result.errors[0].tenant_id == "teacher2"
        assert "write concern timeout" in result.errors[0].error
        assert store.raw(SUBSCRIPTIONS_COLLECTION, "teacher1") is not None
        assert store.raw(SUBSCRIPTIONS_COLLECTION, "teacher2") is None

    async def test_no_tenants(self, store):
        result = await migrate_existing_tenants(store=store, scope=TeacherScope())
        assert result.model_dump() == {"total": 0, "created": 0, "skipped": 0, "failed": 0, "errors": []}

    async def test_bounded_concurrency_processes_everyone(self, store):
        teachers = [f"t{i}" for i in range(25)]
        _seed_school(store, teachers, {t: 1 for t in teachers}, students=2)

        result = await migrate_existing_tenants(store=store, scope=TeacherScope(), concurrency=3)
        assert result.created == 25
        assert len(store.collections[SUBSCRIPTIONS_COLLECTION]) == 25


class TestValidation:
    async def test_detects_drift(self, store):
        _seed_school(store, ["T2"], {"T2": 5})
        store.seed(SUBSCRIPTIONS_COLLECTION, [
            {"id": "T2", "tenant_id": "T2", "current_subjects": 2, "current_students": 0},
        ])

        report = await validate_migration(store=store, scope=TeacherScope())

        assert len(report.subscriptions_with_incorrect_counts) == 1
        drift = report.subscriptions_with_incorrect_counts[0]
        assert drift.tenant_id == "T2"
        assert drift.expected.subjects == 5
        assert drift.actual.subjects == 2
        # Read-only: the stale counter is left alone
        assert store.raw(SUBSCRIPTIONS_COLLECTION, "T2")["current_subjects"] == 2

    async def test_reports_missing_subscriptions(self, store):
        _seed_school(store, ["t1", "t2"], {"t1": 1})
        await migrate_existing_tenants(store=store, scope=TeacherScope())
        store.seed("users", [{"id": "late", "name": "Late Joiner", "role": "teacher"}])

        report = await validate_migration(store=store, scope=TeacherScope())

        assert report.total_tenants == 3
        assert report.total_subscriptions == 2
        assert [(t.id, t.name) for t in report.tenants_without_subscriptions] == [("late", "Late Joiner")]
        assert report.subscriptions_with_incorrect_counts == []

    async def test_clean_after_backfill(self, store):
        _seed_school(store, ["t1", "t2"], {"t1": 2, "t2": 5}, students=8)
        await migrate_existing_tenants(store=store, scope=TeacherScope())

        report = await validate_migration(store=store, scope=TeacherScope())
        assert report.is_clean

    async def test_per_tenant_read_failure_recorded(self):
        class FlakyStore(InMemoryDocumentStore):
            async def get(self, collection, doc_id):
                if doc_id == "t2":
                    raise StoreUnavailable("get", TimeoutError("timed out"))
                return await super().get(collection, doc_id)

        store = FlakyStore()
        store.seed("users", [
            {"id": "t1", "role": "teacher"},
            {"id": "t2", "role": "teacher"},
        ])

        report = await validate_migration(store=store, scope=TeacherScope())

        assert [e.tenant_id for e in report.errors] == ["t2"]
        assert report.errors[0].tenant_name == "Unknown"
        assert [t.id for t in report.tenants_without_subscriptions] == ["t1"]


class TestSchoolScope:
    async def test_school_tenants_count_active_subjects(self, store):
        store.seed("schools", [{"id": "s1", "name": "Green Hills"}])
        store.seed("subjects", [
            {"id": "sub-1", "school_id": "s1", "status": "active"},
            {"id": "sub-2", "school_id": "s1", "status": "active"},
            {"id": "sub-3", "school_id": "s1", "status": "inactive"},
        ])
        store.seed("users", [
            {"id": f"st-{i}", "role": "student", "school_id": "s1", "status": "active"} for i in range(4)
        ])

        result = await migrate_existing_tenants(store=store, scope=SchoolScope())
        doc = store.raw(SUBSCRIPTIONS_COLLECTION, "s1")

        assert result.created == 1
        assert doc["tenant_name"] == "Green Hills"
        assert doc["current_subjects"] == 2
        assert doc["current_students"] == 4

    async def test_scope_from_settings(self, monkeypatch):
        monkeypatch.setenv("QUOTA_TENANT_SCOPE", "school")
        assert isinstance(get_tenant_scope(), SchoolScope)

        monkeypatch.setenv("QUOTA_TENANT_SCOPE", "nonsense")
        assert isinstance(get_tenant_scope(), TeacherScope)

    async def test_unknown_scope_name(self):
        with pytest.raises(ValueError):
            get_tenant_scope("district")
