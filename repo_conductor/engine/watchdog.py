"""
Watchdog: the stage state machine that drives work items forward.

One run ("tick") computes a schedule and then processes the selected items
strictly sequentially, in the order the scheduler emitted them. For each item
the watchdog takes the item's lock, decides the next legal action and performs
at most one transition before releasing the lock and moving on.

Per-item Decision:
    1. Blocked items and items at or past the stop stage are skipped.
    2. CI-eligible post-PR items (``APPLIED``/``CI_PENDING``) are handed to the
       CI dispatcher, which may promote them straight to ``CI_GREEN``.
    3. ``CI_GREEN`` items request merge approval; ``MERGE_APPROVAL_APPROVED``
       items finish as ``DONE`` once CI is still green for the pinned head.
    4. Pre-PR items advance one step, each step gated on the artifacts the
       previous collaborator call left behind.

Failure Isolation:
    Anything that goes wrong inside one item becomes a failure report, a
    ``FAILED`` status with a specific blocking reason and a ledger entry. The
    run then continues with the next item. Lock contention and exhausted
    budgets are skips, never failures.

Single Step Rule:
    Every stage change made while an item is processed passes through a
    ``TransitionGuard``. A second transition, a backward move or a jump of
    more than one stage (other than the CI promotion or ``FAILED``) raises
    ``StageTransitionError`` and fails the item as
    ``watchdog_invariant_violation``.

Example:
    >>> watchdog = Watchdog(settings, CommandCollaborator(settings.collaborators))
    >>> result = await watchdog.run(settings.run_options(limit=2))
    >>> result.ok, [a.work_id for a in result.advanced]
"""

import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from repo_conductor.config.settings import ConductorSettings, RunOptions
from repo_conductor.engine.artifacts import ArtifactLoader, Found, Invalid, NotFound
from repo_conductor.engine.ci_dispatcher import CIDispatcher
from repo_conductor.engine.failure_reporter import FailureReporter
from repo_conductor.engine.gates.apply_approval import ApplyApprovalGate
from repo_conductor.engine.gates.merge_approval import MergeApprovalGate
from repo_conductor.engine.knowledge_events import KnowledgeEventLog
from repo_conductor.engine.ledger import Ledger
from repo_conductor.engine.locks import LockManager
from repo_conductor.engine.paths import StatePaths
from repo_conductor.engine.scheduler import Scheduler
from repo_conductor.engine.status_writer import StatusWriter
from repo_conductor.engine.store import FileWorkItemStore, WorkItemStore
from repo_conductor.exceptions import CollaboratorError, StageTransitionError, UnhandledStageError
from repo_conductor.models.artifacts import Bundle, RoutingRecord
from repo_conductor.models.domain import (
    AdvancedItem,
    CollaboratorResult,
    FailedItem,
    RunResult,
    ScheduleSkip,
    WorkItem,
)
from repo_conductor.models.stages import Stage
from repo_conductor.providers.base import WorkCollaborator

log = structlog.get_logger(__name__)

RESULT_CI_PROMOTED = "ci_promoted"


@dataclass
class Advance:
    """Move the item to ``to_stage``.

    ``persisted`` is set when a gate or the CI dispatcher already wrote the
    transition through the status writer.
    """

    to_stage: Stage
    note: str | None = None
    artifacts: dict[str, str] = field(default_factory=dict)
    persisted: bool = False
    result: str = "advanced"


@dataclass
class Skip:
    reason: str


@dataclass
class Fail:
    reason: str
    title: str
    body: list[str] = field(default_factory=list)
    artifacts: dict[str, str] = field(default_factory=dict)


StepOutcome = Advance | Skip | Fail


def _require(result: CollaboratorResult, operation: str, work_id: str) -> CollaboratorResult:
    if not result.ok:
        raise CollaboratorError(result.message or "no details", operation=operation, work_id=work_id)
    return result


class Watchdog:
    """Runs the scheduler and advances each selected work item by one step.

    Args:
        settings: Immutable process settings
        collaborator: External steps (tasks, propose, qa, apply, CI update)
        store: Work item repository; defaults to the file-backed store
        clock: Monotonic seconds, used for the per-run time budget
    """

    def __init__(
        self,
        settings: ConductorSettings,
        collaborator: WorkCollaborator,
        store: WorkItemStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.collaborator = collaborator
        self.paths = StatePaths(settings.state_root)
        self.ledger = Ledger(self.paths.ledger)
        self.locks = LockManager(self.ledger, settings.locks.stale_ms)
        self.store = store or FileWorkItemStore(self.paths)
        self.loader = ArtifactLoader(self.paths)
        self.status_writer = StatusWriter(self.store, self.ledger, self.paths)
        self.reporter = FailureReporter(self.paths, self.status_writer)
        self.scheduler = Scheduler(settings.scheduler, self.store, self.loader, self.ledger, self.paths)
        self.ci = CIDispatcher(collaborator, self.loader, self.status_writer, self.paths)
        self.apply_gate = ApplyApprovalGate(
            settings.apply_approval,
            self.store,
            self.loader,
            self.status_writer,
            self.ledger,
            self.paths,
            collaborator=collaborator,
        )
        self.merge_gate = MergeApprovalGate(
            self.store,
            self.loader,
            self.status_writer,
            self.ledger,
            self.paths,
            KnowledgeEventLog(settings.knowledge_events_dir),
        )
        self._clock = clock

    async def run(self, options: RunOptions) -> RunResult:
        """Execute one run.

        The global lock is held for the whole run, so schedule computation
        and the run-level ledger lines never interleave with another run.

        Returns:
            The run result; ``ok`` is False when the global lock could not be
            taken or any item failed.
        """
        started = self._clock()
        deadline = started + options.max_minutes * 60

        lock_path = self.paths.global_lock
        lock = await self.locks.acquire(lock_path, metadata={"scope": "global", "pid": os.getpid()})
        if not lock.ok:
            log.warning("watchdog_global_lock_failed", reason=lock.reason)
            return RunResult(ok=False, message=f"Global lock not acquired: {lock.reason}")
        try:
            return await self._run_locked(options, deadline)
        finally:
            await self.locks.release(lock_path)

    async def _run_locked(self, options: RunOptions, deadline: float) -> RunResult:
        if not options.dry_run:
            await self.ledger.append("watchdog_started", **self._run_details(options))
        schedule = await self.scheduler.compute_schedule(options)

        result = RunResult(
            ok=True,
            schedule_path=schedule.path,
            selected=schedule.selected_ids,
            skipped=list(schedule.skipped),
        )
        promotions = 0
        budget = self.settings.watchdog.max_ci_promotions_per_run

        for index, entry in enumerate(schedule.selected):
            remaining = [e.work_id for e in schedule.selected[index:]]
            if self._clock() >= deadline:
                log.warning("watchdog_time_budget_exhausted", remaining=remaining)
                result.skipped += [ScheduleSkip(w, "time_budget") for w in remaining]
                break
            if promotions >= budget:
                result.skipped += [ScheduleSkip(w, "ci_promotion_budget") for w in remaining]
                break
            if options.dry_run:
                result.skipped.append(ScheduleSkip(entry.work_id, "dry_run"))
                continue

            advanced = await self._process(entry.work_id, options, result)
            if advanced is not None and advanced.result == RESULT_CI_PROMOTED:
                promotions += 1

        result.ok = not result.failed
        result.message = (
            f"advanced={len(result.advanced)} failed={len(result.failed)} skipped={len(result.skipped)}"
        )
        if not options.dry_run:
            await self.ledger.append(
                "watchdog_finished",
                ok=result.ok,
                advanced=[a.work_id for a in result.advanced],
                failed=[f.work_id for f in result.failed],
                skipped_count=len(result.skipped),
            )
        log.info("watchdog_finished", ok=result.ok, message=result.message)
        return result

    def _run_details(self, options: RunOptions) -> dict[str, Any]:
        return {
            "stop_at": options.stop_at.value,
            "limit": options.limit,
            "work_id": options.work_id,
            "ci_enabled": options.ci_enabled,
            "prepr_enabled": options.prepr_enabled,
            "max_minutes": options.max_minutes,
        }

    async def _process(self, work_id: str, options: RunOptions, result: RunResult) -> AdvancedItem | None:
        """Process one item under its lock; records the outcome in ``result``."""
        lock_path = self.paths.work_lock(work_id)
        lock = await self.locks.acquire(lock_path, metadata={"work_id": work_id, "scope": "work"})
        if not lock.ok:
            result.skipped.append(ScheduleSkip(work_id, f"locked:{lock.reason}"))
            return None

        try:
            item = await self.store.get(work_id) or WorkItem(work_id=work_id)
            with self.status_writer.guarded(work_id, item.current_stage):
                outcome = await self._step(item, options)
                return await self._apply(item, outcome, result)
        except StageTransitionError as e:
            log.error("watchdog_invariant_violation", work_id=work_id, error=e.message)
            await self._record_failure(
                result,
                work_id,
                Fail("watchdog_invariant_violation", "Stage transition rejected", [str(e)]),
            )
        except Exception as e:
            wrapped = UnhandledStageError(work_id, e)
            log.exception("watchdog_unhandled", work_id=work_id, error=wrapped.message)
            await self._record_failure(
                result,
                work_id,
                Fail("watchdog_unhandled", "Unhandled error", [wrapped.message]),
            )
        finally:
            await self.locks.release(lock_path)
        return None

    async def _apply(self, item: WorkItem, outcome: StepOutcome, result: RunResult) -> AdvancedItem | None:
        work_id = item.work_id
        match outcome:
            case Skip(reason=reason):
                log.info("work_skipped", work_id=work_id, reason=reason)
                result.skipped.append(ScheduleSkip(work_id, reason))
                return None
            case Fail():
                await self._record_failure(result, work_id, outcome)
                return None
            case Advance():
                if not outcome.persisted:
                    await self.status_writer.update_status(
                        work_id,
                        outcome.to_stage,
                        artifacts=outcome.artifacts,
                        note=outcome.note,
                        action="watchdog_advanced",
                    )
                advanced = AdvancedItem(
                    work_id=work_id,
                    result=outcome.result,
                    from_stage=item.current_stage.value,
                    to_stage=outcome.to_stage.value,
                )
                result.advanced.append(advanced)
                return advanced
        return None

    async def _record_failure(self, result: RunResult, work_id: str, failure: Fail) -> None:
        failed = await self.reporter.fail(work_id, failure.reason, failure.title, failure.body, failure.artifacts)
        result.failed.append(failed)

    async def _step(self, item: WorkItem, options: RunOptions) -> StepOutcome:
        stage = item.current_stage
        if item.blocked:
            return Skip(f"blocked:{item.blocking_reason or 'unknown'}")
        if stage.is_terminal:
            return Skip(f"terminal:{stage.value}")
        if stage >= options.stop_at and not (options.ci_enabled and stage.is_ci_eligible):
            return Skip(f"already_at:{stage.value}")

        if stage.is_ci_eligible:
            if not options.ci_enabled:
                return Skip("ci_disabled")
            dispatched = await self.ci.dispatch(item)
            if dispatched.promoted:
                return Advance(Stage.CI_GREEN, persisted=True, result=RESULT_CI_PROMOTED)
            if dispatched.failure:
                return Fail(dispatched.failure, "CI update failed", [dispatched.message or "ci_update returned ok=false"])
            return Skip(dispatched.skip or "ci_no_promotion")

        if stage is Stage.CI_GREEN and options.ci_enabled:
            decision = await self.merge_gate.request(item.work_id)
            if not decision.ok:
                return Skip("merge_approval_refused")
            return Advance(Stage.MERGE_APPROVAL_PENDING, persisted=True, result="merge_approval_requested")
        if stage is Stage.MERGE_APPROVAL_APPROVED:
            if await self.merge_gate.merge_ready(item.work_id):
                return Advance(Stage.DONE, note="merge approved with green CI")
            return Skip("merge_not_ready")
        if stage.is_post_pr:
            return Skip("ci_not_eligible_stage")

        if not options.prepr_enabled:
            return Skip("watchdog_prepr_disabled")
        return await self._advance_prepr(item)

    async def _advance_prepr(self, item: WorkItem) -> StepOutcome:
        """One pre-PR step, gated on the artifacts of the current stage."""
        work_id = item.work_id
        stage = item.current_stage

        if stage < Stage.ROUTED:
            routing = await self._routing(work_id)
            if isinstance(routing, Fail):
                return routing
            return Advance(Stage.ROUTED, artifacts={"routing": self._rel(self.paths.routing(work_id))})

        if stage is Stage.ROUTED:
            return await self._create_tasks(work_id)

        if stage is Stage.TASKS_CREATED:
            routing = await self._routing(work_id)
            if isinstance(routing, Fail):
                return routing
            if not routing.selected_teams:
                return Fail("watchdog_missing_teams", "Routing selected no teams", ["selected_teams is empty"])
            missing = sorted(set(routing.selected_teams) - await self.loader.team_task_files(work_id))
            if missing:
                return Fail("watchdog_tasks_missing", "Team task files missing", [f"Missing teams: {', '.join(missing)}"])
            return Advance(Stage.SWEEP_READY)

        if stage is Stage.SWEEP_READY:
            return await self._propose(work_id)

        if stage is Stage.PROPOSED:
            bundle = await self._bundle(work_id)
            if isinstance(bundle, Fail):
                return bundle
            return await self._check_patch_plans(work_id, bundle)

        if stage is Stage.PATCH_PLANNED:
            return await self._qa(work_id)

        if stage is Stage.QA_PLANNED:
            bundle = await self._bundle(work_id)
            if isinstance(bundle, Fail):
                return bundle
            return Advance(
                Stage.BUNDLED,
                note=f"bundle_hash={bundle.bundle_hash}",
                artifacts={"bundle": self._rel(self.paths.bundle(work_id)), "bundle_hash": bundle.bundle_hash},
            )

        if stage is Stage.BUNDLED:
            decision = await self.apply_gate.request(work_id)
            if not decision.ok:
                return Fail("watchdog_apply_approval_failed", "Apply approval request failed", [decision.message])
            return Advance(
                Stage.APPLY_APPROVAL_PENDING, persisted=True, result=f"apply_approval_{decision.status}"
            )

        if stage is Stage.APPLY_APPROVAL_PENDING:
            if await self._apply_approval_current(work_id):
                return Advance(Stage.APPLY_APPROVAL_APPROVED, note="apply approval approved")
            return Skip("apply_approval_not_approved")

        if stage is Stage.APPLY_APPROVAL_APPROVED:
            if not await self._apply_approval_current(work_id):
                return Fail(
                    "watchdog_apply_approval_stale",
                    "Apply approval no longer valid",
                    ["The approval record is missing, not approved, or pinned to a different bundle."],
                )
            try:
                _require(await self.collaborator.apply(work_id), "apply", work_id)
            except CollaboratorError as e:
                return Fail("watchdog_apply_failed", "Apply failed", [str(e)])
            return Advance(Stage.APPLYING)

        if stage is Stage.APPLYING:
            match await self.loader.pr(work_id):
                case NotFound(path=path):
                    return Fail("watchdog_pr_missing", "PR record missing", [f"Expected {path}"])
                case Invalid(path=path, errors=errors):
                    return Fail("watchdog_pr_invalid", "PR record invalid", [f"{path}", *errors])
            return Advance(Stage.APPLIED, artifacts={"pr": self._rel(self.paths.pr(work_id))})

        return Skip(f"unhandled_stage:{stage.value}")

    async def _routing(self, work_id: str) -> RoutingRecord | Fail:
        match await self.loader.routing(work_id):
            case Found(value=routing):
                return routing
            case NotFound(path=path):
                return Fail("watchdog_missing_routing", "Routing record missing", [f"Expected {path}"])
            case Invalid(path=path, errors=errors):
                return Fail("watchdog_invalid_routing", "Routing record invalid", [f"{path}", *errors])
        raise AssertionError("unreachable")

    async def _bundle(self, work_id: str) -> Bundle | Fail:
        match await self.loader.bundle(work_id):
            case Found(value=bundle):
                return bundle
            case NotFound(path=path):
                return Fail("watchdog_bundle_missing", "Bundle missing", [f"Expected {path}"])
            case Invalid(path=path, errors=errors):
                return Fail("watchdog_bundle_invalid", "Bundle invalid", [f"{path}", *errors])
        raise AssertionError("unreachable")

    async def _create_tasks(self, work_id: str) -> StepOutcome:
        routing = await self._routing(work_id)
        if isinstance(routing, Fail):
            return routing
        teams = routing.selected_teams
        if not teams:
            return Fail("watchdog_missing_teams", "Routing selected no teams", ["selected_teams is empty"])

        if set(teams) - await self.loader.team_task_files(work_id):
            try:
                _require(await self.collaborator.create_tasks(work_id), "create_tasks", work_id)
            except CollaboratorError as e:
                return Fail("watchdog_tasks_failed", "Task creation failed", [str(e)])

        missing = sorted(set(teams) - await self.loader.team_task_files(work_id))
        if missing:
            return Fail(
                "watchdog_tasks_missing",
                "Team task files missing",
                [f"Missing: {self._rel(self.paths.task_file(work_id, t))}" for t in missing],
            )
        return Advance(Stage.TASKS_CREATED, artifacts={"tasks": self._rel(self.paths.tasks_dir(work_id))})

    async def _propose(self, work_id: str) -> StepOutcome:
        routing = await self._routing(work_id)
        if isinstance(routing, Fail):
            return routing

        if isinstance(await self.loader.bundle(work_id), NotFound):
            result = await self.collaborator.propose(work_id, routing.selected_teams, with_patch_plans=True)
            if not result.ok:
                report = await self.reporter.write_propose_failed(work_id, [result.message or "propose returned ok=false"])
                self.paths.bundle(work_id).unlink(missing_ok=True)
                return Fail(
                    "PROPOSAL_FAILED",
                    "Proposal generation failed",
                    [result.message or "propose returned ok=false"],
                    artifacts={"propose_failed": report},
                )

        bundle = await self._bundle(work_id)
        if isinstance(bundle, Fail):
            return bundle
        return Advance(Stage.PROPOSED, artifacts={"bundle": self._rel(self.paths.bundle(work_id))})

    async def _check_patch_plans(self, work_id: str, bundle: Bundle) -> StepOutcome:
        missing: list[str] = []
        invalid: list[str] = []
        for repo in bundle.repos:
            match await self.loader.patch_plan(work_id, repo):
                case NotFound(path=path):
                    missing.append(f"{repo.repo_id}: {path or '(no patch_plan_json_path)'}")
                case Invalid(path=path, errors=errors):
                    invalid.append(f"{repo.repo_id}: {path}: {'; '.join(errors)}")
        if missing:
            return Fail("watchdog_patch_plan_missing", "Patch plan missing", missing + invalid)
        if invalid:
            return Fail("watchdog_patch_plan_invalid", "Patch plan invalid", invalid)
        return Advance(Stage.PATCH_PLANNED)

    async def _qa(self, work_id: str) -> StepOutcome:
        routing = await self._routing(work_id)
        if isinstance(routing, Fail):
            return routing
        repos = list(routing.selected_repos)
        if not repos:
            bundle = await self._bundle(work_id)
            if isinstance(bundle, Fail):
                return bundle
            repos = bundle.repo_ids

        async def missing_plans() -> list[str]:
            return [r for r in repos if isinstance(await self.loader.qa_plan(work_id, r), NotFound)]

        if await missing_plans():
            try:
                _require(await self.collaborator.qa(work_id, routing.selected_teams), "qa", work_id)
            except CollaboratorError as e:
                return Fail("watchdog_qa_failed", "QA planning failed", [str(e)])

        still_missing = await missing_plans()
        if still_missing:
            return Fail(
                "watchdog_qa_missing",
                "QA plan missing",
                [self._rel(self.paths.qa_plan(work_id, r)) for r in still_missing],
            )
        invalid = []
        for repo_id in repos:
            loaded = await self.loader.qa_plan(work_id, repo_id)
            if isinstance(loaded, Invalid):
                invalid.append(f"{self._rel(loaded.path)}: {'; '.join(loaded.errors)}")
        if invalid:
            return Fail("watchdog_qa_invalid", "QA plan invalid", invalid)
        return Advance(Stage.QA_PLANNED, artifacts={"qa": self._rel(self.paths.work_dir(work_id) / "qa")})

    async def _apply_approval_current(self, work_id: str) -> bool:
        """True when the apply approval is approved and pinned to the current bundle."""
        record = await self.loader.apply_approval(work_id)
        bundle = await self.loader.bundle(work_id)
        return (
            isinstance(record, Found)
            and isinstance(bundle, Found)
            and record.value.is_approved
            and record.value.bundle_hash == bundle.value.bundle_hash
        )

    def _rel(self, path: Path) -> str:
        return self.paths.relative(path)
