"""
Typed artifact loading.

Loading an artifact never raises for the expected failure modes. The loader
returns one of three outcomes and callers branch on them:

- ``Found(value, path)``: the file exists and validates
- ``NotFound(path)``: the file does not exist
- ``Invalid(path, errors)``: the file exists but is not valid JSON or does
  not match its model

Callers that prefer exceptions use ``.require()``, which returns the value or
raises ``ArtifactMissingError`` / ``ArtifactInvalidError``.

Example:
    >>> match await loader.routing("W-1"):
    ...     case Found(value=routing):
    ...         teams = routing.selected_teams
    ...     case NotFound():
    ...         ...
    ...     case Invalid(errors=errors):
    ...         ...
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generic, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from repo_conductor.engine.paths import StatePaths
from repo_conductor.exceptions import ArtifactInvalidError, ArtifactMissingError
from repo_conductor.models.artifacts import (
    ApprovalRecord,
    Bundle,
    BundleRepo,
    CISnapshot,
    PatchPlan,
    PRRecord,
    Proposal,
    QAPlan,
    RoutingRecord,
    SSOTDriftRecord,
)
from repo_conductor.utils.jsonio import read_text_if_exists

log = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class Found(Generic[M]):
    value: M
    path: Path

    def require(self) -> M:
        return self.value


@dataclass(frozen=True)
class NotFound:
    path: Path | None

    def require(self) -> BaseModel:
        raise ArtifactMissingError(f"Missing artifact: {self.path}", path=self.path)


@dataclass(frozen=True)
class Invalid:
    path: Path
    errors: list[str] = field(default_factory=list)

    def require(self) -> BaseModel:
        raise ArtifactInvalidError(f"Invalid artifact: {self.path}", path=self.path, errors=self.errors)


ArtifactLoad = Found[M] | NotFound | Invalid

LEGACY_APPROVAL_NAMES = {
    "apply": ("GATE_A", "APPLY_APPROVAL"),
    "merge": ("GATE_B", "MERGE_APPROVAL"),
}


def _validation_messages(error: ValidationError) -> list[str]:
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail.get("loc", ())) or "(root)"
        messages.append(f"{location}: {detail.get('msg')}")
    return messages


class ArtifactLoader:
    """Reads collaborator-produced artifacts of a work item."""

    def __init__(self, paths: StatePaths) -> None:
        self.paths = paths

    async def load(self, path: Path, model: type[M]) -> ArtifactLoad[M]:
        try:
            text = await read_text_if_exists(path)
        except UnicodeDecodeError as e:
            return Invalid(path, [f"invalid UTF-8: {e}"])
        if text is None:
            return NotFound(path)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            return Invalid(path, [f"invalid JSON: {e}"])
        try:
            return Found(model.model_validate(data), path)
        except ValidationError as e:
            return Invalid(path, _validation_messages(e))

    async def routing(self, work_id: str) -> ArtifactLoad[RoutingRecord]:
        return await self.load(self.paths.routing(work_id), RoutingRecord)

    async def bundle(self, work_id: str) -> ArtifactLoad[Bundle]:
        return await self.load(self.paths.bundle(work_id), Bundle)

    async def patch_plan(self, work_id: str, repo: BundleRepo) -> ArtifactLoad[PatchPlan]:
        if not repo.patch_plan_json_path:
            return NotFound(None)
        return await self.load(self.paths.resolve_artifact(work_id, repo.patch_plan_json_path), PatchPlan)

    async def proposal(self, work_id: str, repo: BundleRepo) -> ArtifactLoad[Proposal]:
        if not repo.proposal_path:
            return NotFound(None)
        return await self.load(self.paths.resolve_artifact(work_id, repo.proposal_path), Proposal)

    async def qa_plan(self, work_id: str, repo_id: str) -> ArtifactLoad[QAPlan]:
        return await self.load(self.paths.qa_plan(work_id, repo_id), QAPlan)

    async def ci_snapshot(self, work_id: str) -> ArtifactLoad[CISnapshot]:
        return await self.load(self.paths.ci_status(work_id), CISnapshot)

    async def pr(self, work_id: str) -> ArtifactLoad[PRRecord]:
        return await self.load(self.paths.pr(work_id), PRRecord)

    async def ssot_drift(self, work_id: str) -> ArtifactLoad[SSOTDriftRecord]:
        return await self.load(self.paths.ssot_drift(work_id), SSOTDriftRecord)

    async def apply_approval(self, work_id: str) -> ArtifactLoad[ApprovalRecord]:
        await self.migrate_legacy_approval(work_id, "apply")
        return await self.load(self.paths.apply_approval_json(work_id), ApprovalRecord)

    async def merge_approval(self, work_id: str) -> ArtifactLoad[ApprovalRecord]:
        await self.migrate_legacy_approval(work_id, "merge")
        return await self.load(self.paths.merge_approval_json(work_id), ApprovalRecord)

    async def team_task_files(self, work_id: str) -> set[str]:
        """Team names that have a task file."""
        tasks_dir = self.paths.tasks_dir(work_id)
        if not tasks_dir.is_dir():
            return set()
        return {p.stem for p in tasks_dir.iterdir() if p.is_file() and p.suffix == ".md"}

    async def migrate_legacy_approval(self, work_id: str, gate: str) -> bool:
        """Rename ``GATE_A``/``GATE_B`` records to their current names.

        A legacy file is only moved when the current name does not exist yet.
        """
        legacy, current = LEGACY_APPROVAL_NAMES[gate]
        work_dir = self.paths.work_dir(work_id)
        migrated = False
        for suffix in (".json", ".md"):
            old = work_dir / f"{legacy}{suffix}"
            new = work_dir / f"{current}{suffix}"
            if old.is_file() and not new.exists():
                old.rename(new)
                migrated = True
        if migrated:
            log.info("legacy_approval_migrated", work_id=work_id, gate=gate)
        return migrated
