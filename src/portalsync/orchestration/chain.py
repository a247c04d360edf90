"""
Chain orchestrator.

Runs a small, fixed DAG of steps in declared order. Consecutive steps
that share a ``tier`` name run concurrently; every other step runs on
its own. A step whose dependencies did not all complete is skipped and
never executed. A failing required step aborts the chain; a failing
optional step is recorded and the chain continues.

A fresh SyncContext is active for the whole run and closed afterwards
whatever the outcome.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from portalsync.core.exceptions import ChainAbortedError, ChainDefinitionError
from portalsync.orchestration.context import SyncContext, activate_sync_context
from portalsync.tasks.tracker import ProgressCallback

logger = logging.getLogger(__name__)


# =============================================================================
# States
# =============================================================================

class ChainStatus(str, Enum):
    """Lifecycle of a chain run."""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Outcome of a chain step."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# =============================================================================
# Definitions and Results
# =============================================================================

StepAction = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class ChainStep:
    """One node of a chain."""

    name: str
    action: StepAction
    depends_on: tuple[str, ...] = ()
    required: bool = True
    tier: Optional[str] = None


@dataclass
class StepResult:
    """What happened to one step."""

    name: str
    status: StepStatus
    required: bool = True
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    output: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary."""
        return {
            "name": self.name,
            "status": self.status.value,
            "required": self.required,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "error": self.error,
            "output": self.output,
        }


@dataclass
class ChainRun:
    """Ephemeral record of one chain execution."""

    chain_id: str
    name: str
    status: ChainStatus = ChainStatus.CREATED
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: list[StepResult] = field(default_factory=list)
    context_stats: dict[str, Any] = field(default_factory=dict)

    def step(self, name: str) -> Optional[StepResult]:
        """Find the result of a step by name."""
        for result in self.steps:
            if result.name == name:
                return result
        return None

    def names_with(self, status: StepStatus) -> list[str]:
        """Names of steps that ended in ``status``."""
        return [r.name for r in self.steps if r.status == status]

    @property
    def duration_seconds(self) -> Optional[float]:
        """Wall time of the run."""
        if self.started_at is None or self.completed_at is None:
            return None
        return round((self.completed_at - self.started_at).total_seconds(), 3)

    def to_dict(self) -> dict[str, Any]:
        """Convert run to dictionary."""
        return {
            "chain_id": self.chain_id,
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "completed": self.names_with(StepStatus.COMPLETED),
            "failed": self.names_with(StepStatus.FAILED),
            "skipped": self.names_with(StepStatus.SKIPPED),
            "steps": [r.to_dict() for r in self.steps],
            "context": self.context_stats,
        }


# =============================================================================
# Orchestrator
# =============================================================================

class ChainOrchestrator:
    """
    Executes a validated list of chain steps.

    Args:
        name: Chain name used in logs and results
        steps: Steps in declaration order
        clock: Source of "now"
        on_progress: Optional callback receiving one update per group
    """

    def __init__(
        self,
        name: str,
        steps: list[ChainStep],
        clock: Callable[[], datetime] = datetime.now,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.name = name
        self._steps = list(steps)
        self._clock = clock
        self._on_progress = on_progress
        self._groups = self._plan(self._steps)

    @property
    def steps(self) -> list[ChainStep]:
        """Steps in declaration order."""
        return list(self._steps)

    @property
    def groups(self) -> list[list[ChainStep]]:
        """Execution groups: a tier, or a single step."""
        return [list(g) for g in self._groups]

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    @staticmethod
    def _plan(steps: list[ChainStep]) -> list[list[ChainStep]]:
        """
        Validate steps and group consecutive tier members.

        Raises:
            ChainDefinitionError: On duplicate names, dependencies that
                are not declared earlier, dependencies inside a tier, or a
                tier split by other steps
        """
        groups: list[list[ChainStep]] = []
        declared: set[str] = set()
        closed_tiers: set[str] = set()

        for step in steps:
            if step.name in declared:
                raise ChainDefinitionError(
                    "Duplicate step name", details={"step": step.name}
                )

            current = groups[-1] if groups else None
            joins_current = (
                step.tier is not None
                and current is not None
                and current[0].tier == step.tier
            )
            if step.tier is not None and not joins_current and step.tier in closed_tiers:
                raise ChainDefinitionError(
                    "Tier members must be declared together",
                    details={"step": step.name, "tier": step.tier},
                )

            group_names = {s.name for s in current} if joins_current and current else set()
            for dep in step.depends_on:
                if dep in group_names:
                    raise ChainDefinitionError(
                        "Steps in the same tier cannot depend on each other",
                        details={"step": step.name, "depends_on": dep},
                    )
                if dep not in declared:
                    raise ChainDefinitionError(
                        "Dependency must be declared before the step",
                        details={"step": step.name, "depends_on": dep},
                    )

            if joins_current and current is not None:
                current.append(step)
            else:
                if current is not None and current[0].tier is not None:
                    closed_tiers.add(current[0].tier)
                groups.append([step])
            declared.add(step.name)

        return groups

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def run(self, chain_id: Optional[str] = None) -> ChainRun:
        """
        Execute the chain.

        Returns:
            The completed ChainRun

        Raises:
            ChainAbortedError: If a required step failed; ``run`` on the
                exception holds the partial ChainRun
        """
        run = ChainRun(chain_id=chain_id or uuid.uuid4().hex[:12], name=self.name)
        ctx = SyncContext(chain_id=run.chain_id, clock=self._clock)

        run.status = ChainStatus.RUNNING
        run.started_at = self._clock()
        logger.info(f"Chain {self.name} ({run.chain_id}) started with {len(self._steps)} steps")

        with activate_sync_context(ctx):
            try:
                await self._run_groups(run)
                run.status = ChainStatus.COMPLETED
            except BaseException:
                run.status = ChainStatus.FAILED
                raise
            finally:
                run.completed_at = self._clock()
                run.context_stats = ctx.stats()
                logger.info(
                    f"Chain {self.name} ({run.chain_id}) {run.status.value}: "
                    f"{len(run.names_with(StepStatus.COMPLETED))} completed, "
                    f"{len(run.names_with(StepStatus.FAILED))} failed, "
                    f"{len(run.names_with(StepStatus.SKIPPED))} skipped"
                )

        return run

    async def _run_groups(self, run: ChainRun) -> None:
        completed: set[str] = set()
        total = len(self._groups)

        for index, group in enumerate(self._groups, start=1):
            self._report(f"Running {', '.join(s.name for s in group)}", index - 1, total)

            runnable: list[ChainStep] = []
            results: dict[str, StepResult] = {}
            for step in group:
                missing = [d for d in step.depends_on if d not in completed]
                if missing:
                    reason = f"Unmet dependencies: {', '.join(missing)}"
                    logger.warning(f"Skipping step {step.name}: {reason}")
                    results[step.name] = StepResult(
                        name=step.name,
                        status=StepStatus.SKIPPED,
                        required=step.required,
                        error=reason,
                    )
                else:
                    runnable.append(step)

            if len(runnable) == 1:
                results[runnable[0].name] = await self._run_step(runnable[0])
            elif runnable:
                outcomes = await asyncio.gather(*(self._run_step(s) for s in runnable))
                for outcome in outcomes:
                    results[outcome.name] = outcome

            aborting: Optional[StepResult] = None
            for step in group:
                result = results[step.name]
                run.steps.append(result)
                if result.status == StepStatus.COMPLETED:
                    completed.add(step.name)
                elif result.status == StepStatus.FAILED and step.required and aborting is None:
                    aborting = result

            if aborting is not None:
                logger.error(f"Required step {aborting.name} failed, aborting chain {self.name}")
                raise ChainAbortedError(aborting.name, aborting.error or "", run)

        self._report("Complete", total, total)

    async def _run_step(self, step: ChainStep) -> StepResult:
        result = StepResult(
            name=step.name,
            status=StepStatus.RUNNING,
            required=step.required,
            started_at=self._clock(),
        )
        logger.info(f"Step {step.name} started")
        try:
            result.output = await step.action()
            result.status = StepStatus.COMPLETED
        except Exception as e:
            result.status = StepStatus.FAILED
            result.error = str(e) or e.__class__.__name__
            level = logging.ERROR if step.required else logging.WARNING
            logger.log(level, f"Step {step.name} failed: {result.error}")
        finally:
            result.completed_at = self._clock()
            result.duration_seconds = round(
                (result.completed_at - result.started_at).total_seconds(), 3
            )
        return result

    def _report(self, stage: str, current: int, total: int) -> None:
        if self._on_progress is not None:
            self._on_progress(stage, current, total)
