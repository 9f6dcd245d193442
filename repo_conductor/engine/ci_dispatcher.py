"""CI dispatcher: refreshes CI snapshots and promotes green work items.

The only transition allowed to jump more than one stage is made here:
``APPLIED``/``CI_PENDING`` straight to ``CI_GREEN`` once the CI snapshot is
green.
"""

from dataclasses import dataclass

import structlog

from repo_conductor.engine.artifacts import ArtifactLoader, Invalid, NotFound
from repo_conductor.engine.paths import StatePaths
from repo_conductor.engine.status_writer import StatusWriter
from repo_conductor.models.domain import WorkItem
from repo_conductor.models.stages import Stage
from repo_conductor.providers.base import WorkCollaborator

log = structlog.get_logger(__name__)


@dataclass
class CIDispatchResult:
    """Outcome of one CI dispatch.

    Exactly one of ``promoted``, ``failure`` or ``skip`` describes the result.
    """

    promoted: bool = False
    skip: str | None = None
    failure: str | None = None
    message: str = ""
    snapshot_hash: str | None = None


class CIDispatcher:
    def __init__(
        self,
        collaborator: WorkCollaborator,
        loader: ArtifactLoader,
        status_writer: StatusWriter,
        paths: StatePaths,
    ) -> None:
        self.collaborator = collaborator
        self.loader = loader
        self.status_writer = status_writer
        self.paths = paths

    async def dispatch(self, item: WorkItem) -> CIDispatchResult:
        """Update CI for ``item`` and promote it to ``CI_GREEN`` when green."""
        work_id = item.work_id
        if not item.current_stage.is_ci_eligible:
            return CIDispatchResult(skip="ci_not_eligible_stage")

        result = await self.collaborator.ci_update(work_id)
        if not result.ok:
            log.warning("ci_update_failed", work_id=work_id, message=result.message)
            return CIDispatchResult(failure="ci_update_failed", message=result.message)

        loaded = await self.loader.ci_snapshot(work_id)
        if isinstance(loaded, NotFound):
            return CIDispatchResult(skip="ci_status_missing")
        if isinstance(loaded, Invalid):
            return CIDispatchResult(skip="ci_status_invalid", message="; ".join(loaded.errors))

        snapshot = loaded.value
        overall = snapshot.overall.strip().lower() or "unknown"
        if not snapshot.is_green() or item.current_stage >= Stage.CI_GREEN:
            log.info("ci_not_promoted", work_id=work_id, overall=overall)
            return CIDispatchResult(skip=f"ci_no_promotion:{overall}")

        snapshot_hash = snapshot.content_hash()
        await self.status_writer.update_status(
            work_id,
            Stage.CI_GREEN,
            artifacts={
                "ci_status_json": self.paths.relative(self.paths.ci_status(work_id)),
                "ci_status_hash": snapshot_hash,
            },
            note=f"ci_green head={snapshot.head_sha or 'unknown'}",
            action="ci_promoted",
            details={"head_sha": snapshot.head_sha, "snapshot_hash": snapshot_hash},
        )
        log.info("ci_promoted", work_id=work_id, head_sha=snapshot.head_sha)
        return CIDispatchResult(promoted=True, snapshot_hash=snapshot_hash)
