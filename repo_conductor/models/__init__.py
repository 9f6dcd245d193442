"""Data models for the orchestration engine.

Key Models:
    - Stage: Closed, totally ordered enumeration of work item stages
    - WorkItem: Current state of a work item (stage, blocked flag, artifacts)
    - WorkMeta: Intake metadata used for ordering and dependencies
    - Schedule: Selected and skipped items of one run
    - RunResult: Advanced, failed and skipped items of one watchdog run

Artifact Models:
    - RoutingRecord, Bundle, PatchPlan, QAPlan: collaborator outputs
    - CISnapshot, PRRecord: CI and pull request records
    - ApprovalRecord: Apply and merge approval decisions
    - KnowledgeChangeEvent: Event appended to the knowledge event log

Example:
    >>> from repo_conductor.models import Stage
    >>> Stage.parse("GATE_A_PENDING")
    <Stage.APPLY_APPROVAL_PENDING: 'APPLY_APPROVAL_PENDING'>
"""

from repo_conductor.models.domain import RunResult, Schedule, WorkItem, WorkMeta
from repo_conductor.models.stages import Stage

__all__ = [
    "RunResult",
    "Schedule",
    "Stage",
    "WorkItem",
    "WorkMeta",
]
