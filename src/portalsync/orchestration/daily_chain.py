"""
The daily sync chain.

Pulls the independent LMS entity lists and the CRM data in parallel,
then derives the dependent datasets, then runs retention cleanup:

    fetch tier:   sync_groups, sync_users, sync_courses, crm_sync (optional)
    sync_npcu           after sync_courses                 (optional)
    sync_enrollments    after sync_users and sync_courses
    cleanup                                                (optional)
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from portalsync.orchestration.chain import ChainOrchestrator, ChainStep
from portalsync.tasks.configs import DailyChainConfig
from portalsync.tasks.constants import SyncMode, TaskKind
from portalsync.tasks.tracker import ProgressCallback


DAILY_CHAIN_NAME = "daily_sync"
FETCH_TIER = "fetch"

StepRunner = Callable[[str, Optional[dict[str, Any]]], Awaitable[dict[str, Any]]]


def _entity_kind(base: TaskKind, full: bool) -> TaskKind:
    return TaskKind(f"{base.value}_full") if full else base


def build_daily_sync_steps(run_step: StepRunner, options: DailyChainConfig) -> list[ChainStep]:
    """
    Build the steps of the daily chain.

    Args:
        run_step: Runs one task type through the executor; receives an
            explicit config, or None to use the catalog config
        options: Which optional parts to include and whether to force
            full syncs

    Returns:
        Steps in declaration order
    """
    def action(task_type: str, config: Optional[dict[str, Any]] = None):
        return lambda: run_step(task_type, config)

    full = options.full
    steps = [
        ChainStep(
            "sync_groups",
            action(_entity_kind(TaskKind.SYNC_GROUPS, full).value),
            tier=FETCH_TIER,
        ),
        ChainStep(
            "sync_users",
            action(_entity_kind(TaskKind.SYNC_USERS, full).value),
            tier=FETCH_TIER,
        ),
        ChainStep(
            "sync_courses",
            action(_entity_kind(TaskKind.SYNC_COURSES, full).value),
            tier=FETCH_TIER,
        ),
    ]
    if options.include_crm:
        crm_config = {"mode": SyncMode.FULL.value} if full else None
        steps.append(
            ChainStep(
                "crm_sync",
                action(TaskKind.CRM_SYNC.value, crm_config),
                required=False,
                tier=FETCH_TIER,
            )
        )

    steps.extend([
        ChainStep(
            "sync_npcu",
            action(TaskKind.SYNC_NPCU.value),
            depends_on=("sync_courses",),
            required=False,
        ),
        ChainStep(
            "sync_enrollments",
            action(_entity_kind(TaskKind.SYNC_ENROLLMENTS, full).value),
            depends_on=("sync_users", "sync_courses"),
        ),
    ])

    if options.include_cleanup:
        steps.append(ChainStep("cleanup", action(TaskKind.CLEANUP.value), required=False))

    return steps


def build_daily_sync_chain(
    run_step: StepRunner,
    options: Optional[DailyChainConfig] = None,
    clock: Callable[[], datetime] = datetime.now,
    on_progress: Optional[ProgressCallback] = None,
) -> ChainOrchestrator:
    """Create an orchestrator for the daily chain."""
    steps = build_daily_sync_steps(run_step, options or DailyChainConfig())
    return ChainOrchestrator(DAILY_CHAIN_NAME, steps, clock=clock, on_progress=on_progress)
