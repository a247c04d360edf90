"""
portalsync Orchestration Module.

This module runs multi-step sync chains with dependency gating and a
per-chain cache of external entities.

Public API:
-----------

Chains:
    ChainOrchestrator - Executes a validated step list
    ChainStep - One node of a chain
    ChainRun - Result of a chain execution
    StepResult - Result of one step
    ChainStatus - Chain lifecycle state
    StepStatus - Step outcome

Daily chain:
    build_daily_sync_chain - Orchestrator for the daily sync DAG
    build_daily_sync_steps - Steps of the daily sync DAG

Context:
    SyncContext - Per-chain entity cache
    current_sync_context - Active context or None
    activate_sync_context - Publish a context for a chain run
"""

from portalsync.orchestration.chain import (
    ChainOrchestrator,
    ChainRun,
    ChainStatus,
    ChainStep,
    StepResult,
    StepStatus,
)
from portalsync.orchestration.context import (
    SyncContext,
    SyncContextStats,
    activate_sync_context,
    current_sync_context,
)
from portalsync.orchestration.daily_chain import (
    DAILY_CHAIN_NAME,
    build_daily_sync_chain,
    build_daily_sync_steps,
)

__all__ = [
    # Chains
    "ChainOrchestrator",
    "ChainStep",
    "ChainRun",
    "StepResult",
    "ChainStatus",
    "StepStatus",
    # Daily chain
    "DAILY_CHAIN_NAME",
    "build_daily_sync_chain",
    "build_daily_sync_steps",
    # Context
    "SyncContext",
    "SyncContextStats",
    "current_sync_context",
    "activate_sync_context",
]
