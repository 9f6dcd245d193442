"""Artifact models.

Pydantic models for the JSON artifacts the orchestrator consumes from its
collaborators (routing, bundle, patch plans, QA plans, PR and CI records) and
the ones it produces itself (approval records, SSOT drift records, knowledge
change events).

Validation here is structural only: required fields are present and have the
right types. Deeper contract checks belong to the collaborators that author
the artifacts.

Example:
    Checking a CI snapshot::

        snapshot = CISnapshot.model_validate_json(text)
        if snapshot.is_green():
            print(snapshot.content_hash())
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from repo_conductor.utils.jsonio import sha256_hex, stable_json


class TargetBranch(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = None
    source: str | None = None
    valid: bool | None = None


class RoutingRecord(BaseModel):
    """Routing decision for a work item (``ROUTING.json``)."""

    model_config = ConfigDict(extra="allow")

    selected_teams: list[str] = Field(default_factory=list)
    selected_repos: list[str] = Field(default_factory=list)
    routing_mode: str | None = None
    target_branch: TargetBranch | None = None
    timestamp: str | None = None

    @field_validator("selected_teams", "selected_repos")
    @classmethod
    def drop_empty(cls, v: list[str]) -> list[str]:
        return [s.strip() for s in v if s and s.strip()]


class BundleRepo(BaseModel):
    """One repository entry of a bundle."""

    model_config = ConfigDict(extra="allow")

    repo_id: str = Field(..., min_length=1)
    team_id: str | None = None
    repo_kind: str | None = None
    patch_plan_json_path: str | None = None
    proposal_path: str | None = None


class Bundle(BaseModel):
    """Content-addressed bundle (``BUNDLE.json``) pinning proposals and patch plans."""

    model_config = ConfigDict(extra="allow")

    bundle_hash: str = Field(..., min_length=1)
    repos: list[BundleRepo] = Field(..., min_length=1)

    @property
    def repo_ids(self) -> list[str]:
        return sorted({r.repo_id for r in self.repos})

    @property
    def team_ids(self) -> list[str]:
        return sorted({r.team_id for r in self.repos if r.team_id})


class PatchPlanRisk(BaseModel):
    model_config = ConfigDict(extra="allow")

    level: str = "unknown"


class PatchPlan(BaseModel):
    model_config = ConfigDict(extra="allow")

    repo_id: str = Field(..., min_length=1)
    work_id: str | None = None
    risk: PatchPlanRisk = Field(default_factory=PatchPlanRisk)
    edits: list[dict[str, Any]] = Field(default_factory=list)


class Proposal(BaseModel):
    model_config = ConfigDict(extra="allow")

    agent_id: str | None = None
    ssot_references: list[Any] | None = None


class QAPlan(BaseModel):
    model_config = ConfigDict(extra="allow")

    repo_id: str = Field(..., min_length=1)
    tests: list[dict[str, Any]] = Field(default_factory=list)


class CICheck(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = None
    status: str = ""
    conclusion: str | None = None


class CISnapshot(BaseModel):
    """CI snapshot (``CI/CI_Status.json``) written by the CI-update collaborator."""

    model_config = ConfigDict(extra="allow")

    overall: str = ""
    checks: list[CICheck] = Field(default_factory=list)
    head_sha: str | None = None
    captured_at: str | None = None

    def is_green(self) -> bool:
        """Overall success with at least one check, every check completed and successful."""
        if self.overall.strip().lower() != "success" or not self.checks:
            return False
        return all(
            c.status.strip().lower() == "completed" and (c.conclusion or "").strip().lower() == "success"
            for c in self.checks
        )

    def content_hash(self) -> str:
        """Hash of the snapshot content, ignoring when it was captured."""
        data = self.model_dump(mode="json", exclude={"captured_at"})
        return sha256_hex(stable_json(data))


class PRRecord(BaseModel):
    """Pull request record (``PR.json``) written by the apply collaborator."""

    model_config = ConfigDict(extra="allow")

    head_branch: str = Field(..., min_length=1)
    pr_number: int | None = None
    url: str | None = None
    owner: str | None = None
    repo: str | None = None
    base_branch: str | None = None

    def repo_id_for(self, work_id: str) -> str | None:
        """Infer the repository id from a ``ai/<work_id>/<repo>/...`` head branch."""
        branch = self.head_branch.strip()
        prefix = f"ai/{work_id}/"
        if branch.startswith(prefix):
            parts = [p for p in branch[len(prefix) :].split("/") if p]
            return parts[0] if parts else None
        parts = [p for p in branch.split("/") if p]
        return parts[-1] if parts else None


class ApprovalScope(BaseModel):
    teams: list[str] = Field(default_factory=list)
    repos: list[str] = Field(default_factory=list)


class ApprovalRecord(BaseModel):
    """Apply or merge approval record."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    version: int = 1
    work_id: str = Field(..., alias="workId")
    status: Literal["pending", "approved"]
    mode: Literal["auto", "manual"]
    bundle_hash: str | None = None
    approved_at: str | None = None
    approved_by: str | None = None
    reason_codes: list[str] = Field(default_factory=list)
    notes: str | None = None
    scope: ApprovalScope = Field(default_factory=ApprovalScope)
    highest_risk: str | None = None
    head_sha: str | None = None

    @property
    def is_approved(self) -> bool:
        return self.status == "approved"

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=False)


class SSOTDriftRecord(BaseModel):
    """Result of an SSOT/contract drift check (``SSOT_DRIFT.json``)."""

    model_config = ConfigDict(extra="allow")

    hard_violations: list[Any] = Field(default_factory=list)
    soft_violations: list[Any] = Field(default_factory=list)
    checked_at: str | None = None


class KnowledgeEventArtifacts(BaseModel):
    paths: list[str] = Field(default_factory=list)
    fingerprints: list[str] = Field(default_factory=list)

    @field_validator("paths", "fingerprints")
    @classmethod
    def normalize(cls, v: list[str]) -> list[str]:
        return sorted({s.strip() for s in v if s and s.strip()})


class KnowledgeChangeEvent(BaseModel):
    """A change event appended to the external knowledge event log."""

    version: int = 1
    event_id: str
    type: str = Field(..., min_length=1)
    scope: str = Field(..., min_length=1)
    repo_id: str | None = None
    work_id: str
    pr_number: int | None = None
    commit: str = Field(..., min_length=1)
    artifacts: KnowledgeEventArtifacts = Field(default_factory=KnowledgeEventArtifacts)
    summary: str = ""
    timestamp: str
