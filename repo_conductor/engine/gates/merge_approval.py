"""
Merge approval gate.

Merging is only ever approved against green CI for the exact commit that was
reviewed: a request pins the bundle hash and the CI snapshot's ``head_sha``,
and approval re-checks that the current snapshot is still green for that
same commit. Anything else is refused without touching the work item.

On approval a ``merge`` change event is appended to the knowledge event log so
downstream staleness tracking learns about the merged commit. Emission is
best effort; a failure is ledgered and never undoes the approval.
"""

import structlog
from pydantic import ValidationError

from repo_conductor.engine.artifacts import ArtifactLoader, Found
from repo_conductor.engine.gates.apply_approval import render_approval_markdown
from repo_conductor.engine.knowledge_events import KnowledgeEventLog, build_event
from repo_conductor.engine.ledger import Ledger
from repo_conductor.engine.paths import StatePaths
from repo_conductor.engine.status_writer import StatusWriter
from repo_conductor.engine.store import WorkItemStore
from repo_conductor.exceptions import ArtifactError, GateError
from repo_conductor.models.artifacts import ApprovalRecord, ApprovalScope, CISnapshot
from repo_conductor.models.domain import GateDecision
from repo_conductor.models.stages import Stage
from repo_conductor.utils.jsonio import utc_now_iso, write_json, write_text_atomic

log = structlog.get_logger(__name__)

GATE = "merge"
TITLE = "Merge Approval"


class MergeApprovalGate:
    """Requests and approves merges against pinned, green CI."""

    def __init__(
        self,
        store: WorkItemStore,
        loader: ArtifactLoader,
        status_writer: StatusWriter,
        ledger: Ledger,
        paths: StatePaths,
        events: KnowledgeEventLog,
    ) -> None:
        self.store = store
        self.loader = loader
        self.status_writer = status_writer
        self.ledger = ledger
        self.paths = paths
        self.events = events

    def _refuse(self, work_id: str, message: str) -> GateDecision:
        log.info("merge_approval_refused", work_id=work_id, reason=message)
        return GateDecision(ok=False, gate=GATE, message=message)

    async def _green_snapshot(self, work_id: str) -> CISnapshot:
        """The current CI snapshot.

        Raises:
            GateError: If the snapshot is missing, invalid or not green
        """
        try:
            snapshot = (await self.loader.ci_snapshot(work_id)).require()
        except ArtifactError as e:
            raise GateError("CI snapshot missing or invalid", gate=GATE) from e
        if not snapshot.is_green():
            raise GateError(f"CI not green (overall: {snapshot.overall or 'unknown'})", gate=GATE)
        return snapshot

    async def request(self, work_id: str, dry_run: bool = False) -> GateDecision:
        """Request merge approval for a ``CI_GREEN`` work item."""
        item = await self.store.get(work_id)
        if item is None or item.current_stage is not Stage.CI_GREEN:
            stage = item.current_stage.value if item else "(missing)"
            return self._refuse(work_id, f"Merge approval requires CI_GREEN (current: {stage})")

        await self.loader.migrate_legacy_approval(work_id, GATE)
        bundle = await self.loader.bundle(work_id)
        if not isinstance(bundle, Found):
            return self._refuse(work_id, "Bundle missing or invalid")
        if not isinstance(await self.loader.pr(work_id), Found):
            return self._refuse(work_id, "PR record missing or invalid")
        try:
            snapshot = await self._green_snapshot(work_id)
        except GateError as e:
            return self._refuse(work_id, e.message)

        record = ApprovalRecord(
            work_id=work_id,
            status="pending",
            mode="manual",
            bundle_hash=bundle.value.bundle_hash,
            head_sha=snapshot.head_sha,
            scope=ApprovalScope(teams=bundle.value.team_ids, repos=bundle.value.repo_ids),
        )
        record_path = self.paths.relative(self.paths.merge_approval_json(work_id))
        if dry_run:
            return GateDecision(ok=True, gate=GATE, status="pending", message="dry run", record_path=record_path)

        await self._write_record(work_id, record)
        await self.status_writer.update_status(
            work_id,
            Stage.MERGE_APPROVAL_PENDING,
            blocked=True,
            blocking_reason="merge_approval_pending",
            artifacts=self._artifacts(work_id),
            note="merge_approval=pending",
            action="merge_approval_requested",
            details={"bundle_hash": record.bundle_hash, "head_sha": record.head_sha},
        )
        return GateDecision(
            ok=True, gate=GATE, status="pending", message="merge approval pending", record_path=record_path
        )

    async def approve(self, work_id: str, approved_by: str = "human", notes: str | None = None) -> GateDecision:
        """Approve the merge if CI is still green for the pinned commit."""
        loaded = await self.loader.merge_approval(work_id)
        if not isinstance(loaded, Found):
            return self._refuse(work_id, "Merge approval record missing or invalid")
        item = await self.store.get(work_id)
        if item is None or item.current_stage is not Stage.MERGE_APPROVAL_PENDING:
            stage = item.current_stage.value if item else "(missing)"
            return self._refuse(work_id, f"Merge approval requires MERGE_APPROVAL_PENDING (current: {stage})")

        try:
            snapshot = await self._green_snapshot(work_id)
        except GateError as e:
            return self._refuse(work_id, e.message)
        if not loaded.value.head_sha or snapshot.head_sha != loaded.value.head_sha:
            return self._refuse(
                work_id, f"CI head {snapshot.head_sha or '(none)'} does not match pinned {loaded.value.head_sha or '(none)'}"
            )

        record = loaded.value.model_copy(
            update={
                "status": "approved",
                "mode": "manual",
                "approved_at": utc_now_iso(),
                "approved_by": approved_by.strip() or "human",
                "notes": notes.strip() if notes else None,
            }
        )
        await self._write_record(work_id, record)
        await self.status_writer.update_status(
            work_id,
            Stage.MERGE_APPROVAL_APPROVED,
            artifacts=self._artifacts(work_id),
            note="merge_approval=approved",
            action="merge_approval_approved",
            details={"approved_by": record.approved_by, "head_sha": record.head_sha},
        )
        await self._emit_merge_event(work_id, record, snapshot)
        return GateDecision(
            ok=True,
            gate=GATE,
            status="approved",
            message="merge approval approved",
            record_path=self.paths.relative(self.paths.merge_approval_json(work_id)),
        )

    async def merge_ready(self, work_id: str) -> bool:
        """True when the record is approved and CI is still green for its pinned head."""
        loaded = await self.loader.merge_approval(work_id)
        if not isinstance(loaded, Found) or not loaded.value.is_approved:
            return False
        try:
            snapshot = await self._green_snapshot(work_id)
        except GateError:
            return False
        return snapshot.head_sha == loaded.value.head_sha

    async def _emit_merge_event(self, work_id: str, record: ApprovalRecord, snapshot: CISnapshot) -> None:
        pr = await self.loader.pr(work_id)
        pr_record = pr.value if isinstance(pr, Found) else None
        repo_id = pr_record.repo_id_for(work_id) if pr_record else None
        try:
            event = build_event(
                "merge",
                work_id=work_id,
                commit=snapshot.head_sha or "",
                scope=f"repo:{repo_id}" if repo_id else "work",
                repo_id=repo_id,
                pr_number=pr_record.pr_number if pr_record else None,
                paths=[
                    self.paths.relative(self.paths.pr(work_id)),
                    self.paths.relative(self.paths.ci_status(work_id)),
                    self.paths.relative(self.paths.merge_approval_json(work_id)),
                ],
                fingerprints=[f"bundle:{record.bundle_hash}"] if record.bundle_hash else [],
                summary=f"Merge approved for {work_id}" + (f" ({repo_id})" if repo_id else ""),
            )
            await self.events.append(event)
        except (ValidationError, ValueError, OSError) as e:
            log.warning("knowledge_event_emit_failed", work_id=work_id, error=str(e))
            await self.ledger.append("knowledge_event_emit_failed", work_id=work_id, error=str(e))
            return
        await self.ledger.append("knowledge_event_emitted", work_id=work_id, event_id=event.event_id, type=event.type)

    async def _write_record(self, work_id: str, record: ApprovalRecord) -> None:
        await write_json(self.paths.merge_approval_json(work_id), record.to_json_dict())
        await write_text_atomic(self.paths.merge_approval_md(work_id), render_approval_markdown(record, TITLE))

    def _artifacts(self, work_id: str) -> dict[str, str]:
        return {
            "merge_approval_json": self.paths.relative(self.paths.merge_approval_json(work_id)),
            "merge_approval_md": self.paths.relative(self.paths.merge_approval_md(work_id)),
        }
