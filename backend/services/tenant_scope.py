"""Tenant scope - who owns a quota and how its ground truth is counted.

teacher scope (default):
    tenants   users {role: teacher}
    subjects  exams {teacher_id}
    students  users {role: student, school_id: <teacher's school>, status: active}
              0 when the teacher has no school

school scope:
    tenants   schools
    subjects  subjects {school_id, status: active}
    students  users {role: student, school_id, status: active}

Selected with QUOTA_TENANT_SCOPE. Ground-truth counts always come straight
from the store; nothing here reads the ledger.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from models import RecordStatus, TenantRef, UsageCounts, UserRole
from quota_settings import get_tenant_scope as configured_scope_name
from services.document_store import DocumentStore

USERS_COLLECTION = "users"
EXAMS_COLLECTION = "exams"
SCHOOLS_COLLECTION = "schools"
SUBJECTS_COLLECTION = "subjects"


def _doc_id(doc: Dict[str, Any]) -> str:
    return doc.get("id") or doc.get("_id")


class TenantScope(ABC):
    """Enumerates tenants and counts their real subjects and students."""

    name: str = ""
    tenant_collection: str = USERS_COLLECTION

    @abstractmethod
    async def list_tenants(self, store: DocumentStore) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def count_subjects(self, store: DocumentStore, tenant: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    async def count_students(self, store: DocumentStore, tenant: Dict[str, Any]) -> int:
        ...

    async def load_tenant(self, store: DocumentStore, tenant_id: str) -> Optional[Dict[str, Any]]:
        """The tenant's own record (name, email), used to address notifications."""
        return await store.get(self.tenant_collection, tenant_id)

    def tenant_ref(self, tenant: Dict[str, Any]) -> TenantRef:
        return TenantRef(id=_doc_id(tenant), name=tenant.get("name") or "Unknown")

    async def ground_truth(self, store: DocumentStore, tenant: Dict[str, Any]) -> UsageCounts:
        return UsageCounts(
            subjects=await self.count_subjects(store, tenant),
            students=await self.count_students(store, tenant),
        )


async def _count_active_students(store: DocumentStore, school_id: Optional[str]) -> int:
    if not school_id:
        return 0
    return await store.count_where(
        USERS_COLLECTION,
        {"role": UserRole.STUDENT.value, "school_id": school_id, "status": RecordStatus.ACTIVE.value},
    )


class TeacherScope(TenantScope):
    name = "teacher"

    async def list_tenants(self, store):
        return await store.find_where(USERS_COLLECTION, {"role": UserRole.TEACHER.value})

    async def count_subjects(self, store, tenant):
        return await store.count_where(EXAMS_COLLECTION, {"teacher_id": _doc_id(tenant)})

    async def count_students(self, store, tenant):
        return await _count_active_students(store, tenant.get("school_id"))


class SchoolScope(TenantScope):
    name = "school"
    tenant_collection = SCHOOLS_COLLECTION

    async def list_tenants(self, store):
        return await store.find_where(SCHOOLS_COLLECTION, {})

    async def count_subjects(self, store, tenant):
        return await store.count_where(
            SUBJECTS_COLLECTION,
            {"school_id": _doc_id(tenant), "status": RecordStatus.ACTIVE.value},
        )

    async def count_students(self, store, tenant):
        return await _count_active_students(store, _doc_id(tenant))


SCOPES = {
    TeacherScope.name: TeacherScope(),
    SchoolScope.name: SchoolScope(),
}


def get_tenant_scope(name: Optional[str] = None) -> TenantScope:
    """Scope by name, or the one configured through QUOTA_TENANT_SCOPE."""
    key = (name or configured_scope_name()).strip().lower()
    if key not in SCOPES:
        raise ValueError(f"Unknown tenant scope: {key!r}")
    return SCOPES[key]
