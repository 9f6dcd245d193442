"""
Apply approval gate: permission to turn a bundle into pull requests.

A request evaluates the bundle against the auto-approval policy and always
writes a decision record (``APPLY_APPROVAL.json`` plus a markdown rendering)
listing every reason code that prevented auto-approval. With no reason codes
the record is approved automatically; otherwise it stays ``pending`` until a
human approves it.

Reason Codes:
    patch_plan_missing, patch_plan_invalid: a bundle repo has no usable plan
    proposal_missing, proposal_invalid: a referenced proposal is unusable
    ssot_references_missing: a proposal carries no ``ssot_references`` list
    ssot_drift_invalid, ssot_hard_violation: drift record problems
    risk_disallowed:<level>: highest patch plan risk is not auto-approvable
    team_not_allowlisted:<team>, repo_kind_not_allowlisted:<kind>
    auto_approve_disabled
"""

import structlog

from repo_conductor.config.settings import ApplyApprovalConfig
from repo_conductor.engine.artifacts import ArtifactLoader, Found, Invalid, NotFound
from repo_conductor.engine.ledger import Ledger
from repo_conductor.engine.paths import StatePaths
from repo_conductor.engine.status_writer import StatusWriter
from repo_conductor.engine.store import WorkItemStore
from repo_conductor.exceptions import CollaboratorError
from repo_conductor.models.artifacts import ApprovalRecord, ApprovalScope, Bundle
from repo_conductor.models.domain import GateDecision
from repo_conductor.models.stages import Stage
from repo_conductor.providers.base import WorkCollaborator
from repo_conductor.utils.jsonio import utc_now_iso, write_json, write_text_atomic

log = structlog.get_logger(__name__)

GATE = "apply"

_RISK_RANK = {"unknown": 0, "low": 1, "medium": 2, "high": 3}


def risk_bucket(level: str | None) -> str:
    raw = (level or "").strip().lower()
    if raw == "low":
        return "low"
    if raw in ("normal", "medium"):
        return "medium"
    if raw == "high":
        return "high"
    return "unknown"


def render_approval_markdown(record: ApprovalRecord, title: str, errors: list[str] | None = None) -> str:
    """Human-readable rendering of an approval record."""
    lines = [f"# {title}", "", f"Work item: `{record.work_id}`", "", "## Status", ""]
    lines.append(f"- status: `{record.status}`")
    lines.append(f"- mode: `{record.mode}`")
    lines.append(f"- bundle_hash: `{record.bundle_hash or '(missing)'}`")
    if record.head_sha:
        lines.append(f"- head_sha: `{record.head_sha}`")
    if record.highest_risk:
        lines.append(f"- highest_risk: `{record.highest_risk}`")
    lines.append(f"- approved_at: `{record.approved_at or '(null)'}`")
    lines.append(f"- approved_by: `{record.approved_by or '(null)'}`")
    lines += ["", "## Scope", ""]
    lines.append(f"- teams: {', '.join(f'`{t}`' for t in record.scope.teams) or '(none)'}")
    lines.append(f"- repos: {', '.join(f'`{r}`' for r in record.scope.repos) or '(none)'}")
    lines.append("")
    if record.reason_codes:
        lines += ["## Reason codes", "", *[f"- `{c}`" for c in record.reason_codes], ""]
    if record.notes:
        lines += ["## Notes", "", record.notes.strip(), ""]
    if errors:
        lines += ["## Validation errors", "", *[f"- {e}" for e in errors], ""]
    return "\n".join(lines)


class ApplyApprovalGate:
    """Evaluates and records apply approval decisions."""

    def __init__(
        self,
        config: ApplyApprovalConfig,
        store: WorkItemStore,
        loader: ArtifactLoader,
        status_writer: StatusWriter,
        ledger: Ledger,
        paths: StatePaths,
        collaborator: WorkCollaborator | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.loader = loader
        self.status_writer = status_writer
        self.ledger = ledger
        self.paths = paths
        self.collaborator = collaborator

    async def _evaluate(self, work_id: str, bundle: Bundle, dry_run: bool) -> tuple[list[str], list[str], str]:
        """Returns (reason_codes, errors, highest_risk)."""
        reasons: list[str] = []
        errors: list[str] = []
        highest = "unknown"

        for repo in bundle.repos:
            match await self.loader.patch_plan(work_id, repo):
                case Found(value=plan):
                    bucket = risk_bucket(plan.risk.level)
                    if _RISK_RANK[bucket] > _RISK_RANK[highest]:
                        highest = bucket
                case NotFound(path=path):
                    reasons.append("patch_plan_missing")
                    errors.append(f"Missing patch plan for {repo.repo_id}: {path or '(no path in bundle)'}")
                case Invalid(path=path, errors=problems):
                    reasons.append("patch_plan_invalid")
                    errors.append(f"Invalid patch plan for {repo.repo_id} ({path}): {'; '.join(problems)}")

            if not repo.proposal_path:
                continue
            match await self.loader.proposal(work_id, repo):
                case Found(value=proposal):
                    if proposal.ssot_references is None:
                        reasons.append("ssot_references_missing")
                        errors.append(f"Proposal for {repo.repo_id} has no ssot_references list")
                case NotFound(path=path):
                    reasons.append("proposal_missing")
                    errors.append(f"Missing proposal for {repo.repo_id}: {path}")
                case Invalid(path=path, errors=problems):
                    reasons.append("proposal_invalid")
                    errors.append(f"Invalid proposal for {repo.repo_id} ({path}): {'; '.join(problems)}")

        if self.collaborator is not None:
            try:
                drift = await self.collaborator.check_ssot_drift(work_id)
            except CollaboratorError as e:
                reasons.append("ssot_drift_invalid")
                errors.append(e.message)
                drift = None
            if drift is not None and not dry_run:
                await write_json(self.paths.ssot_drift(work_id), drift.model_dump(mode="json"))

        match await self.loader.ssot_drift(work_id):
            case Found(value=drift_record):
                if drift_record.hard_violations:
                    reasons.append("ssot_hard_violation")
            case Invalid(errors=problems):
                reasons.append("ssot_drift_invalid")
                errors.append(f"Invalid SSOT drift record: {'; '.join(problems)}")
            case NotFound():
                pass

        if highest in self.config.disallowed_risk_levels:
            reasons.append(f"risk_disallowed:{highest}")
        if self.config.team_allowlist is not None:
            reasons += [f"team_not_allowlisted:{t}" for t in bundle.team_ids if t not in self.config.team_allowlist]
        if self.config.repo_kind_allowlist is not None:
            kinds = sorted({r.repo_kind or "unknown" for r in bundle.repos})
            reasons += [f"repo_kind_not_allowlisted:{k}" for k in kinds if k not in self.config.repo_kind_allowlist]
        if not self.config.auto_approve:
            reasons.append("auto_approve_disabled")

        return sorted(set(reasons)), errors, highest

    async def request(self, work_id: str, dry_run: bool = False) -> GateDecision:
        """Evaluate the bundle and record an apply approval decision.

        The item moves (or stays) at ``APPLY_APPROVAL_PENDING``; it is blocked
        when the decision is pending and unblocked when auto-approved.
        """
        record_path = self.paths.relative(self.paths.apply_approval_json(work_id))
        if await self.store.get_meta(work_id) is None:
            return GateDecision(ok=False, gate=GATE, message=f"Work item not found: {work_id}")

        item = await self.store.get(work_id)
        stage = item.current_stage if item else Stage.INTAKE_RECEIVED
        if stage not in (Stage.BUNDLED, Stage.APPLY_APPROVAL_PENDING):
            return GateDecision(ok=False, gate=GATE, message=f"Apply approval not available at {stage.value}")

        await self.loader.migrate_legacy_approval(work_id, GATE)
        match await self.loader.bundle(work_id):
            case Found(value=bundle):
                pass
            case NotFound(path=path):
                return GateDecision(ok=False, gate=GATE, message=f"Missing bundle: {path}")
            case Invalid(path=path, errors=problems):
                return GateDecision(ok=False, gate=GATE, message=f"Invalid bundle {path}: {'; '.join(problems)}")

        reasons, errors, highest = await self._evaluate(work_id, bundle, dry_run)
        approved = not reasons
        record = ApprovalRecord(
            work_id=work_id,
            status="approved" if approved else "pending",
            mode="auto" if approved else "manual",
            bundle_hash=bundle.bundle_hash,
            approved_at=utc_now_iso() if approved else None,
            approved_by="auto" if approved else None,
            reason_codes=reasons,
            scope=ApprovalScope(teams=bundle.team_ids, repos=bundle.repo_ids),
            highest_risk=highest,
        )
        decision = GateDecision(
            ok=True,
            gate=GATE,
            status=record.status,
            message=f"apply approval {record.status} ({record.mode})",
            reason_codes=reasons,
            record_path=record_path,
        )
        if dry_run:
            log.info("apply_approval_evaluated", work_id=work_id, status=record.status, dry_run=True)
            return decision

        await write_json(self.paths.apply_approval_json(work_id), record.to_json_dict())
        await write_text_atomic(
            self.paths.apply_approval_md(work_id),
            render_approval_markdown(record, "Apply Approval (PR creation permission)", errors),
        )
        await self.status_writer.update_status(
            work_id,
            Stage.APPLY_APPROVAL_PENDING,
            blocked=not approved,
            blocking_reason=None if approved else "apply_approval_pending",
            artifacts=self._artifacts(work_id),
            note=f"apply_approval={record.status} mode={record.mode}",
            action="apply_approval_requested",
            details={"status": record.status, "mode": record.mode, "bundle_hash": bundle.bundle_hash, "reason_codes": reasons},
        )
        if approved:
            await self.ledger.append("apply_approval_auto_approved", work_id=work_id, bundle_hash=bundle.bundle_hash)
        log.info("apply_approval_requested", work_id=work_id, status=record.status, reason_codes=reasons)
        return decision

    async def approve(self, work_id: str, approved_by: str = "human", notes: str | None = None) -> GateDecision:
        """Manually approve a pending apply approval record."""
        record_path = self.paths.relative(self.paths.apply_approval_json(work_id))
        loaded = await self.loader.apply_approval(work_id)
        if not isinstance(loaded, Found):
            return GateDecision(ok=False, gate=GATE, message=f"No usable apply approval record for {work_id}")

        record = loaded.value.model_copy(
            update={
                "status": "approved",
                "mode": "manual",
                "approved_at": utc_now_iso(),
                "approved_by": approved_by.strip() or "human",
                "notes": notes.strip() if notes else None,
            }
        )
        await write_json(self.paths.apply_approval_json(work_id), record.to_json_dict())
        await write_text_atomic(
            self.paths.apply_approval_md(work_id), render_approval_markdown(record, "Apply Approval (PR creation permission)")
        )

        item = await self.store.get(work_id)
        if item is not None and item.current_stage is Stage.APPLY_APPROVAL_PENDING:
            await self.status_writer.update_status(
                work_id,
                Stage.APPLY_APPROVAL_APPROVED,
                artifacts=self._artifacts(work_id),
                note="apply_approval=approved manual",
                action="apply_approval_approved",
                details={"approved_by": record.approved_by, "notes": record.notes},
            )
        else:
            await self.ledger.append("apply_approval_approved", work_id=work_id, approved_by=record.approved_by)
        log.info("apply_approval_approved", work_id=work_id, approved_by=record.approved_by)
        return GateDecision(ok=True, gate=GATE, status="approved", message="apply approval approved", record_path=record_path)

    def _artifacts(self, work_id: str) -> dict[str, str]:
        return {
            "apply_approval_json": self.paths.relative(self.paths.apply_approval_json(work_id)),
            "apply_approval_md": self.paths.relative(self.paths.apply_approval_md(work_id)),
        }
