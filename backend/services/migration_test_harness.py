"""
Migration test harness - exercises backfill and validation end to end on
synthetic data.

All synthetic records use ids prefixed with "test-", so they can be removed
without touching real tenants. The migration and validation stages only see
synthetic teachers; real tenants are never backfilled by a test run.

Seeded data (teacher scope):
    test-teacher-1  school test-school-1   2 exams   -> 2 subjects, 8 students
    test-teacher-2  school test-school-1   5 exams   -> 5 subjects, 8 students
    test-teacher-3  school test-school-2   0 exams   -> 0 subjects, 15 students
    test-teacher-4  no school              1 exam    -> 1 subject,  0 students
"""
from typing import Any, Dict, List, Optional
import logging

from models import RecordStatus, UserRole, utc_now
from services.document_store import DocumentStore, get_document_store
from services.quota_migration import migrate_existing_tenants, validate_migration
from services.tenant_scope import EXAMS_COLLECTION, USERS_COLLECTION, TeacherScope
from services.usage_ledger import SUBSCRIPTIONS_COLLECTION, read_counters
from utils.audit import EVENTS_COLLECTION

logger = logging.getLogger(__name__)

TEST_ID_PREFIX = "test-"
_TEST_ID_QUERY = {"_id": {"$regex": f"^{TEST_ID_PREFIX}"}}

EXPECTED_RESULTS = {
    "test-teacher-1": {"subjects": 2, "students": 8},
    "test-teacher-2": {"subjects": 5, "students": 8},
    "test-teacher-3": {"subjects": 0, "students": 15},
    "test-teacher-4": {"subjects": 1, "students": 0},
}

SAMPLE_TEACHERS = [
    {"id": "test-teacher-1", "name": "John Doe", "email": "john.doe@test.com", "school_id": "test-school-1"},
    {"id": "test-teacher-2", "name": "Jane Smith", "email": "jane.smith@test.com", "school_id": "test-school-1"},
    {"id": "test-teacher-3", "name": "Bob Johnson", "email": "bob.johnson@test.com", "school_id": "test-school-2"},
    {"id": "test-teacher-4", "name": "Alice Williams", "email": "alice.williams@test.com", "school_id": None},
]

# (exam id, title, teacher id, school id)
SAMPLE_EXAMS = [
    ("test-exam-1", "Math Final", "test-teacher-1", "test-school-1"),
    ("test-exam-2", "Science Quiz", "test-teacher-1", "test-school-1"),
    ("test-exam-3", "English Test", "test-teacher-2", "test-school-1"),
    ("test-exam-4", "History Exam", "test-teacher-2", "test-school-1"),
    ("test-exam-5", "Geography Quiz", "test-teacher-2", "test-school-1"),
    ("test-exam-6", "Physics Test", "test-teacher-2", "test-school-1"),
    ("test-exam-7", "Chemistry Exam", "test-teacher-2", "test-school-1"),
    ("test-exam-8", "Art Project", "test-teacher-4", None),
]

# school id -> number of active students
SAMPLE_STUDENTS_PER_SCHOOL = {"test-school-1": 8, "test-school-2": 15}


class SyntheticTeacherScope(TeacherScope):
    """Teacher scope restricted to synthetic tenants."""

    name = "teacher"

    async def list_tenants(self, store):
        return await store.find_where(
            USERS_COLLECTION, {"role": UserRole.TEACHER.value, **_TEST_ID_QUERY}
        )


# =============================================================================
# SEEDING / CLEANUP
# =============================================================================

async def create_sample_teachers(store: DocumentStore) -> List[Dict[str, Any]]:
    now = utc_now()
    teachers = []
    for teacher in SAMPLE_TEACHERS:
        doc = {
            **teacher,
            "role": UserRole.TEACHER.value,
            "status": RecordStatus.ACTIVE.value,
            "created_at": now,
        }
        await store.put(USERS_COLLECTION, teacher["id"], doc, merge=False)
        teachers.append(doc)
    logger.info(f"Created {len(teachers)} sample teachers")
    return teachers


async def create_sample_exams(store: DocumentStore) -> List[Dict[str, Any]]:
    now = utc_now()
    exams = []
    for exam_id, title, teacher_id, school_id in SAMPLE_EXAMS:
        doc = {
            "id": exam_id,
            "title": title,
            "teacher_id": teacher_id,
            "school_id": school_id,
            "created_at": now,
        }
        await store.put(EXAMS_COLLECTION, exam_id, doc, merge=False)
        exams.append(doc)
    logger.info(f"Created {len(exams)} sample exams")
    return exams


async def create_sample_students(store: DocumentStore) -> List[Dict[str, Any]]:
    now = utc_now()
    students = []
    for school_number, (school_id, count) in enumerate(SAMPLE_STUDENTS_PER_SCHOOL.items(), start=1):
        for i in range(1, count + 1):
            student_id = f"test-student-school{school_number}-{i}"
            doc = {
                "id": student_id,
                "name": f"Student {i} School {school_number}",
                "email": f"student{i}.school{school_number}@test.com",
                "role": UserRole.STUDENT.value,
                "school_id": school_id,
                "status": RecordStatus.ACTIVE.value,
                "created_at": now,
            }
            await store.put(USERS_COLLECTION, student_id, doc, merge=False)
            students.append(doc)
    logger.info(f"Created {len(students)} sample students")
    return students


async def cleanup_test_data(store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    """Delete every synthetic record (id prefix "test-") from users, exams and subscriptions."""
    store = store or get_document_store()
    try:
        deleted_count = 0
        for collection in (USERS_COLLECTION, EXAMS_COLLECTION, SUBSCRIPTIONS_COLLECTION):
            deleted_count += await store.delete_where(collection, _TEST_ID_QUERY)
        # Lifecycle events written for synthetic tenants
        await store.delete_where(EVENTS_COLLECTION, {"tenant_id": {"$regex": f"^{TEST_ID_PREFIX}"}})
        logger.info(f"Deleted {deleted_count} test documents")
        return {"success": True, "deleted_count": deleted_count}
    except Exception as e:
        logger.error(f"Error cleaning up test data: {e}")
        return {"success": False, "error": str(e)}


async def setup_test_environment(store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    """Remove previous synthetic data, then seed teachers, exams and students."""
    store = store or get_document_store()
    try:
        cleanup = await cleanup_test_data(store)
        if not cleanup["success"]:
            return {"success": False, "error": cleanup["error"]}

        teachers = await create_sample_teachers(store)
        exams = await create_sample_exams(store)
        students = await create_sample_students(store)
        logger.info(f"Test environment ready: teachers={len(teachers)} exams={len(exams)} students={len(students)}")
        return {
            "success": True,
            "teachers": len(teachers),
            "exams": len(exams),
            "students": len(students),
        }
    except Exception as e:
        logger.error(f"Error setting up test environment: {e}")
        return {"success": False, "error": str(e)}


# =============================================================================
# VERIFICATION
# =============================================================================

async def verify_test_migration(store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    """Compare each synthetic tenant's ledger with EXPECTED_RESULTS."""
    store = store or get_document_store()
    results: Dict[str, Any] = {"passed": [], "failed": []}

    for tenant_id, expected in EXPECTED_RESULTS.items():
        subscription = await store.get(SUBSCRIPTIONS_COLLECTION, tenant_id)
        if not subscription:
            results["failed"].append({"tenant_id": tenant_id, "reason": "Subscription not found"})
            logger.warning(f"{tenant_id}: subscription not found")
            continue

        actual = read_counters(subscription)
        if actual == expected:
            results["passed"].append(tenant_id)
            logger.info(f"{tenant_id}: correct ({expected['subjects']} subjects, {expected['students']} students)")
        else:
            results["failed"].append({"tenant_id": tenant_id, "expected": expected, "actual": actual})
            logger.warning(f"{tenant_id}: expected {expected}, actual {actual}")

    logger.info(f"Verification complete: passed {len(results['passed'])}/{len(EXPECTED_RESULTS)}")
    return results


# =============================================================================
# FULL RUN
# =============================================================================

async def run_migration_test(store: Optional[DocumentStore] = None) -> Dict[str, Any]:
    """
    setup -> migrate -> validate -> verify -> cleanup.

    Each stage reports pass/fail on its own. A failed setup skips the middle
    stages; cleanup always runs.
    """
    store = store or get_document_store()
    scope = SyntheticTeacherScope()
    stages: Dict[str, Dict[str, Any]] = {}

    try:
        setup = await setup_test_environment(store)
        stages["setup"] = {"passed": setup["success"], "details": setup}
        if setup["success"]:
            await _run_stages(store, scope, stages)
    except Exception as e:
        logger.error(f"Migration test run aborted: {e}")
        stages["error"] = {"passed": False, "details": {"error": str(e)}}
    finally:
        cleanup = await cleanup_test_data(store)
        stages["cleanup"] = {"passed": cleanup["success"], "details": cleanup}

    return _summarize(stages)


async def _run_stages(store: DocumentStore, scope: SyntheticTeacherScope, stages: Dict[str, Dict[str, Any]]) -> None:
    migration = await migrate_existing_tenants(store=store, scope=scope)
    stages["migration"] = {
        "passed": migration.failed == 0 and migration.created == len(EXPECTED_RESULTS),
        "details": migration.model_dump(),
    }

    validation = await validate_migration(store=store, scope=scope)
    stages["validation"] = {"passed": validation.is_clean, "details": validation.model_dump()}

    verification = await verify_test_migration(store)
    stages["verification"] = {"passed": not verification["failed"], "details": verification}


def _summarize(stages: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    success = all(stage["passed"] for stage in stages.values())
    logger.info(
        "Migration test run %s: %s",
        "PASSED" if success else "FAILED",
        ", ".join(f"{name}={'ok' if stage['passed'] else 'fail'}" for name, stage in stages.items()),
    )
    return {"success": success, "stages": stages}
