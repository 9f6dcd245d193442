"""
Status writer: the single choke point for persisting work item state.

Every stage transition and every failure passes through
``StatusWriter.update_status``, which in one call

1. merges the change into the item's snapshot (artifacts and repos are merged,
   never dropped),
2. appends a stage history entry when the stage changed,
3. persists the snapshot through the work item store,
4. appends the matching ledger entry, and
5. re-renders the global ``STATUS.md`` table.

Because snapshot and ledger are written together, status and audit trail
cannot diverge.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from repo_conductor.engine.ledger import Ledger
from repo_conductor.engine.paths import StatePaths
from repo_conductor.engine.store import WorkItemStore
from repo_conductor.exceptions import ArtifactInvalidError, StageTransitionError, UnknownStageError
from repo_conductor.models.domain import StageHistoryEntry, WorkItem
from repo_conductor.models.stages import Stage
from repo_conductor.utils.jsonio import utc_now_iso, write_text_atomic

log = structlog.get_logger(__name__)


class TransitionGuard:
    """Checks that one work item moves at most one stage within one run.

    The CI promotion (``APPLIED``/``CI_PENDING`` -> ``CI_GREEN``) may skip
    stages, and ``FAILED`` is reachable from anywhere. Everything else must be
    a single forward step, and only one per run.
    """

    def __init__(self, work_id: str, start: Stage) -> None:
        self.work_id = work_id
        self.current = start
        self.transitions = 0

    def check(self, to_stage: Stage) -> None:
        """Raise ``StageTransitionError`` if moving to ``to_stage`` is not allowed."""
        if to_stage is self.current or to_stage is Stage.FAILED:
            return
        if self.transitions:
            raise StageTransitionError("Second transition in one run", self.work_id, self.current.value, to_stage.value)
        if to_stage < self.current:
            raise StageTransitionError("Backward transition", self.work_id, self.current.value, to_stage.value)
        ci_promotion = self.current.is_ci_eligible and to_stage is Stage.CI_GREEN
        if to_stage.index - self.current.index > 1 and not ci_promotion:
            raise StageTransitionError("Transition skips stages", self.work_id, self.current.value, to_stage.value)

    def record(self, to_stage: Stage) -> None:
        if to_stage is not self.current:
            self.transitions += 1
            self.current = to_stage


class StatusWriter:
    def __init__(self, store: WorkItemStore, ledger: Ledger, paths: StatePaths) -> None:
        self.store = store
        self.ledger = ledger
        self.paths = paths
        self._guards: dict[str, TransitionGuard] = {}

    async def read(self, work_id: str) -> WorkItem | None:
        return await self.store.get(work_id)

    @contextmanager
    def guarded(self, work_id: str, start: Stage) -> Iterator[TransitionGuard]:
        """Check every stage change of ``work_id`` made inside the block."""
        guard = TransitionGuard(work_id, start)
        self._guards[work_id] = guard
        try:
            yield guard
        finally:
            self._guards.pop(work_id, None)

    async def update_status(
        self,
        work_id: str,
        stage: Stage,
        *,
        blocked: bool = False,
        blocking_reason: str | None = None,
        artifacts: dict[str, str] | None = None,
        repos: dict[str, Any] | None = None,
        note: str | None = None,
        action: str = "status_updated",
        details: dict[str, Any] | None = None,
    ) -> WorkItem:
        """Persist a new stage/blocked state for a work item and ledger it.

        Args:
            work_id: Work item to update
            stage: New current stage
            blocked: Whether the item is paused awaiting external action
            blocking_reason: Machine-readable reason, kept only when blocked
            artifacts: Artifact paths merged into the snapshot
            repos: Per-repo status merged into the snapshot
            note: Free-text note attached to the history entry
            action: Ledger action name
            details: Extra ledger fields

        Returns:
            The persisted work item

        Raises:
            StageTransitionError: If a transition guard is active for the
                item and rejects the stage change
        """
        guard = self._guards.get(work_id)
        if guard is not None:
            guard.check(stage)

        try:
            previous = await self.store.get(work_id)
        except (ArtifactInvalidError, UnknownStageError) as e:
            log.warning("status_snapshot_replaced", work_id=work_id, error=e.message)
            previous = None

        timestamp = utc_now_iso()
        item = previous or WorkItem(work_id=work_id)
        from_stage = previous.current_stage.value if previous else None

        item.work_id = work_id
        item.last_updated = timestamp
        item.blocked = blocked
        item.blocking_reason = (blocking_reason or item.blocking_reason or "unknown") if blocked else None
        if artifacts:
            item.artifacts = {**item.artifacts, **artifacts}
        if repos:
            merged = dict(item.repos)
            for repo_id, update in repos.items():
                current = merged.get(repo_id)
                if isinstance(update, dict) and isinstance(current, dict):
                    merged[repo_id] = {**current, **update}
                else:
                    merged[repo_id] = update
            item.repos = merged

        if previous is None or previous.current_stage is not stage:
            last = item.history[-1] if item.history else None
            if not (last and last.stage is stage and (last.note or "") == (note or "")):
                item.history.append(StageHistoryEntry(timestamp=timestamp, stage=stage, note=note))
        item.current_stage = stage

        await self.store.put(item)
        if guard is not None:
            guard.record(stage)
        await self.ledger.append(
            action,
            work_id=work_id,
            from_stage=from_stage,
            to_stage=stage.value,
            blocked=blocked or None,
            blocking_reason=item.blocking_reason,
            note=note,
            **(details or {}),
        )
        await self.write_global_status()
        log.info(
            "work_status_updated",
            work_id=work_id,
            from_stage=from_stage,
            to_stage=stage.value,
            blocked=blocked,
        )
        return item

    async def write_global_status(self) -> None:
        """Render the table of all work items into the global ``STATUS.md``."""
        lines = ["# STATUS", ""]
        rows = []
        for work_id in await self.store.list_ids():
            try:
                item = await self.store.get(work_id)
            except (ArtifactInvalidError, UnknownStageError):
                rows.append((work_id, "(invalid)", "(invalid)", "no", ""))
                continue
            if item is None:
                rows.append((work_id, "(missing)", "(missing)", "no", ""))
                continue
            reason = (item.blocking_reason or "").replace("|", "\\|")
            rows.append(
                (
                    work_id,
                    item.current_stage.value,
                    item.last_updated or "(missing)",
                    "yes" if item.blocked else "no",
                    reason,
                )
            )

        if not rows:
            lines += ["No work items.", ""]
        else:
            lines += ["| work_id | current_stage | last_updated | blocked | reason | path |", "|---|---|---|---|---|---|"]
            for work_id, stage, updated, blocked, reason in rows:
                path = self.paths.relative(self.paths.work_dir(work_id))
                lines.append(f"| {work_id} | {stage} | {updated} | {blocked} | {reason} | `{path}/` |")
            lines.append("")

        await write_text_atomic(self.paths.global_status, "\n".join(lines))
