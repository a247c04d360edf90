"""Wiring of every built-in task kind to its adapter."""

from datetime import datetime
from typing import Callable

from portalsync.sync.crm import CrmClient
from portalsync.sync.entities import EnrollmentSyncAdapter, EntitySyncAdapter
from portalsync.sync.lms import LmsClient
from portalsync.sync.maintenance import CleanupAdapter, LmsSyncAdapter
from portalsync.sync.partners import CrmSyncAdapter
from portalsync.sync.records import SyncRecordStore
from portalsync.tasks.constants import TaskKind
from portalsync.tasks.dispatch import AdapterRegistry
from portalsync.tasks.store import TaskStore


def build_default_registry(
    lms: LmsClient,
    crm: CrmClient,
    records: SyncRecordStore,
    task_store: TaskStore,
    clock: Callable[[], datetime] = datetime.now,
) -> AdapterRegistry:
    """
    Create the adapter registry for the built-in sync kinds.

    ``daily_sync_chain`` is not included; it needs the executor and is
    registered by the service that owns one.
    """
    def properties(since, on_page):
        return lms.list_course_properties(on_page)

    users = EntitySyncAdapter("users", lms.list_people, records)
    groups = EntitySyncAdapter("groups", lms.list_groups, records)
    courses = EntitySyncAdapter("courses", lms.list_courses, records)
    npcu = EntitySyncAdapter(
        "course_properties", properties, records, force_full=True, label="course properties"
    )
    enrollments = EnrollmentSyncAdapter(lms, records, clock=clock)

    registry = AdapterRegistry({
        TaskKind.SYNC_USERS: users,
        TaskKind.SYNC_USERS_FULL: EntitySyncAdapter("users", lms.list_people, records, force_full=True),
        TaskKind.SYNC_GROUPS: groups,
        TaskKind.SYNC_GROUPS_FULL: EntitySyncAdapter("groups", lms.list_groups, records, force_full=True),
        TaskKind.SYNC_COURSES: courses,
        TaskKind.SYNC_COURSES_FULL: EntitySyncAdapter("courses", lms.list_courses, records, force_full=True),
        TaskKind.SYNC_NPCU: npcu,
        TaskKind.SYNC_ENROLLMENTS: enrollments,
        TaskKind.SYNC_ENROLLMENTS_FULL: EnrollmentSyncAdapter(lms, records, force_full=True, clock=clock),
        TaskKind.CRM_SYNC: CrmSyncAdapter(crm, records),
        TaskKind.CLEANUP: CleanupAdapter(task_store, records, clock=clock),
    })
    registry.register(
        TaskKind.LMS_SYNC,
        LmsSyncAdapter({
            "users": users,
            "groups": groups,
            "courses": courses,
            "npcu": npcu,
            "enrollments": enrollments,
        }),
    )
    return registry
