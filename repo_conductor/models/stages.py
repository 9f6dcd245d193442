"""Work item stages.

Stages form a closed, totally ordered enumeration. ``FAILED`` sits outside the
order: it is terminal and reachable from every non-terminal stage.

Older work items may still carry deprecated stage names (the "gate" naming
scheme used before approvals were split into apply and merge permission).
Those names are accepted through an alias table that is validated when this
module is imported; anything else is rejected with ``UnknownStageError``.

Example:
    >>> Stage.parse("GATE_A_PENDING")
    <Stage.APPLY_APPROVAL_PENDING: 'APPLY_APPROVAL_PENDING'>
    >>> Stage.ROUTED < Stage.BUNDLED
    True
"""

from __future__ import annotations

from enum import Enum

from repo_conductor.exceptions import UnknownStageError


class Stage(str, Enum):
    """Lifecycle stage of a work item, declared in canonical order."""

    INTAKE_RECEIVED = "INTAKE_RECEIVED"
    ROUTED = "ROUTED"
    TASKS_CREATED = "TASKS_CREATED"
    SWEEP_READY = "SWEEP_READY"
    PROPOSED = "PROPOSED"
    PATCH_PLANNED = "PATCH_PLANNED"
    QA_PLANNED = "QA_PLANNED"
    BUNDLED = "BUNDLED"
    APPLY_APPROVAL_PENDING = "APPLY_APPROVAL_PENDING"
    APPLY_APPROVAL_APPROVED = "APPLY_APPROVAL_APPROVED"
    APPLYING = "APPLYING"
    APPLIED = "APPLIED"
    CI_PENDING = "CI_PENDING"
    CI_FAILED = "CI_FAILED"
    CI_FIXING = "CI_FIXING"
    CI_GREEN = "CI_GREEN"
    MERGE_APPROVAL_PENDING = "MERGE_APPROVAL_PENDING"
    MERGE_APPROVAL_APPROVED = "MERGE_APPROVAL_APPROVED"
    DONE = "DONE"
    FAILED = "FAILED"

    def __str__(self) -> str:
        return self.value

    @property
    def index(self) -> int:
        """Position in the canonical order.

        ``FAILED`` is ordered after ``DONE`` so that a failed item is never
        considered "before" any stage.
        """
        if self is Stage.FAILED:
            return len(STAGE_ORDER)
        return _INDEX[self]

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.DONE, Stage.FAILED)

    @property
    def is_post_pr(self) -> bool:
        """True once a pull request exists (``APPLIED`` and later)."""
        return not self.is_terminal and self.index >= Stage.APPLIED.index

    @property
    def is_ci_eligible(self) -> bool:
        """Stages the CI dispatcher may promote to ``CI_GREEN``."""
        return self in (Stage.APPLIED, Stage.CI_PENDING)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        return self.index < other.index

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        return self.index <= other.index

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        return self.index > other.index

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        return self.index >= other.index

    @classmethod
    def parse(cls, raw: str | Stage | None) -> Stage:
        """Normalize a stage string, resolving legacy aliases.

        Raises:
            UnknownStageError: If ``raw`` is empty or not a known name
        """
        if isinstance(raw, Stage):
            return raw
        text = str(raw or "").strip()
        if text in cls.__members__:
            return cls[text]
        if text in LEGACY_ALIASES:
            return LEGACY_ALIASES[text]
        raise UnknownStageError(text)

    @classmethod
    def try_parse(cls, raw: str | Stage | None) -> Stage | None:
        try:
            return cls.parse(raw)
        except UnknownStageError:
            return None


STAGE_ORDER: tuple[Stage, ...] = tuple(s for s in Stage if s is not Stage.FAILED)

_INDEX: dict[Stage, int] = {stage: i for i, stage in enumerate(STAGE_ORDER)}

LEGACY_ALIASES: dict[str, Stage] = {
    "GATE_A_PENDING": Stage.APPLY_APPROVAL_PENDING,
    "GATE_A_APPROVED": Stage.APPLY_APPROVAL_APPROVED,
    "GATE_B_PENDING": Stage.MERGE_APPROVAL_PENDING,
    "APPROVED_TO_MERGE": Stage.MERGE_APPROVAL_APPROVED,
    "PR_OPENED": Stage.APPLIED,
    "CI_RUNNING": Stage.CI_PENDING,
    "MERGED": Stage.DONE,
    "COMPLETED": Stage.DONE,
}
