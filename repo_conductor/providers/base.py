"""
Abstract base class for work collaborators.

The orchestrator never authors proposals, patch plans or QA plans, never
applies patches and never talks to a CI provider itself. Each of those steps
is delegated to a collaborator behind this interface; the orchestrator only
checks the artifacts a collaborator leaves in the work item directory.
"""

from abc import ABC, abstractmethod

from repo_conductor.models.artifacts import SSOTDriftRecord
from repo_conductor.models.domain import CollaboratorResult


class WorkCollaborator(ABC):
    """Contract for the external steps invoked by the stage state machine.

    Every call is a suspension point of the run and may be slow. A failed call
    returns ``CollaboratorResult(ok=False, message=...)`` rather than raising;
    implementations only raise for programming errors.
    """

    @abstractmethod
    async def create_tasks(self, work_id: str) -> CollaboratorResult:
        """Write one task file per routed team under ``tasks/``."""
        pass

    @abstractmethod
    async def propose(self, work_id: str, teams: list[str], with_patch_plans: bool = True) -> CollaboratorResult:
        """Produce proposals (and patch plans) and write ``BUNDLE.json``.

        Args:
            work_id: Work item id
            teams: Teams routed for this work item
            with_patch_plans: Also author the per-repo patch plans
        """
        pass

    @abstractmethod
    async def qa(self, work_id: str, teams: list[str], limit: int | None = None) -> CollaboratorResult:
        """Write a QA plan for every routed repository."""
        pass

    @abstractmethod
    async def apply(self, work_id: str) -> CollaboratorResult:
        """Apply the approved bundle and open the pull request (``PR.json``)."""
        pass

    @abstractmethod
    async def ci_update(self, work_id: str) -> CollaboratorResult:
        """Refresh ``CI/CI_Status.json`` from the CI provider."""
        pass

    async def check_ssot_drift(self, work_id: str) -> SSOTDriftRecord | None:
        """Check the bundle for SSOT/contract drift.

        Returns None when no drift checker is available.
        """
        return None
