"""
Domain models for the orchestration engine.

This module contains the data classes passed between the scheduler, the lock
manager, the gates and the watchdog. They are the normalized in-memory form of
the on-disk work item state; each class that is persisted knows how to convert
itself to and from the plain dictionaries written to JSON.

Example:
    Reading a status snapshot back into a work item::

        item = WorkItem.from_snapshot(snapshot_dict)
        if item.blocked:
            print(item.blocking_reason)
"""

from dataclasses import asdict, dataclass, field
from typing import Any

from repo_conductor.models.stages import Stage

DEFAULT_PRIORITY = 50


@dataclass
class StageHistoryEntry:
    """One stage change recorded in a work item's status history."""

    timestamp: str
    stage: Stage
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": self.timestamp, "stage": self.stage.value}
        if self.note:
            data["note"] = self.note
        return data


@dataclass
class WorkItem:
    """Current state of a work item as stored in its status snapshot.

    ``current_stage`` is only ever changed by the status writer, and only
    while the item's lock is held.
    """

    work_id: str
    current_stage: Stage = Stage.INTAKE_RECEIVED
    blocked: bool = False
    blocking_reason: str | None = None
    artifacts: dict[str, str] = field(default_factory=dict)
    repos: dict[str, Any] = field(default_factory=dict)
    history: list[StageHistoryEntry] = field(default_factory=list)
    last_updated: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.current_stage.is_terminal

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "work_id": self.work_id,
            "current_stage": self.current_stage.value,
            "last_updated": self.last_updated,
            "blocked": self.blocked,
            "blocking_reason": self.blocking_reason,
            "artifacts": dict(sorted(self.artifacts.items())),
            "repos": dict(sorted(self.repos.items())),
            "history": [h.to_dict() for h in self.history],
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any], work_id: str | None = None) -> "WorkItem":
        """Build a work item from a snapshot dictionary.

        Raises:
            UnknownStageError: If the snapshot carries an unrecognised stage
        """
        history = []
        for entry in data.get("history") or []:
            if not isinstance(entry, dict) or not entry.get("timestamp"):
                continue
            stage = Stage.try_parse(entry.get("stage"))
            if stage is None:
                continue
            history.append(StageHistoryEntry(timestamp=str(entry["timestamp"]), stage=stage, note=entry.get("note")))

        artifacts = data.get("artifacts")
        repos = data.get("repos")
        return cls(
            work_id=str(data.get("work_id") or work_id or ""),
            current_stage=Stage.parse(data.get("current_stage") or Stage.INTAKE_RECEIVED),
            blocked=bool(data.get("blocked")),
            blocking_reason=data.get("blocking_reason") if isinstance(data.get("blocking_reason"), str) else None,
            artifacts={str(k): str(v) for k, v in artifacts.items()} if isinstance(artifacts, dict) else {},
            repos=dict(repos) if isinstance(repos, dict) else {},
            history=history,
            last_updated=data.get("last_updated") if isinstance(data.get("last_updated"), str) else None,
        )


@dataclass
class WorkMeta:
    """Intake metadata (``META.json``) used for ordering and dependency checks."""

    work_id: str
    created_at: str
    priority: int = DEFAULT_PRIORITY
    depends_on: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    repo_scopes: list[str] = field(default_factory=list)
    target_branch: str | None = None
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "work_id": self.work_id,
            "created_at": self.created_at,
            "priority": self.priority,
            "depends_on": list(self.depends_on),
            "blocks": list(self.blocks),
            "labels": list(self.labels),
            "repo_scopes": list(self.repo_scopes),
            "target_branch": self.target_branch,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], work_id: str) -> "WorkMeta":
        def str_list(key: str) -> list[str]:
            value = data.get(key)
            return [str(v) for v in value if v] if isinstance(value, list) else []

        try:
            priority = int(data.get("priority", DEFAULT_PRIORITY))
        except (TypeError, ValueError):
            priority = DEFAULT_PRIORITY
        target = data.get("target_branch")
        return cls(
            work_id=str(data.get("work_id") or work_id),
            created_at=str(data.get("created_at") or ""),
            priority=priority,
            depends_on=str_list("depends_on"),
            blocks=str_list("blocks"),
            labels=str_list("labels"),
            repo_scopes=str_list("repo_scopes"),
            target_branch=target if isinstance(target, str) and target else None,
        )


@dataclass
class ScheduleEntry:
    """A work item selected for this run."""

    work_id: str
    reason: str = "eligible"
    score: dict[str, Any] | None = None
    repos: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ScheduleSkip:
    """A work item that was not processed, with a machine-readable reason.

    Reasons are prefixed by category, for example ``blocked:<reason>``,
    ``already_at:<stage>`` or ``locked:<reason>``.
    """

    work_id: str
    reason: str
    repos: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"work_id": self.work_id, "reason": self.reason, "repos": list(self.repos)}


@dataclass
class Schedule:
    """Result of a schedule computation."""

    generated_at: str
    selected: list[ScheduleEntry] = field(default_factory=list)
    skipped: list[ScheduleSkip] = field(default_factory=list)
    path: str | None = None
    ok: bool = True

    @property
    def selected_ids(self) -> list[str]:
        return [entry.work_id for entry in self.selected]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": 1,
            "generated_at": self.generated_at,
            "selected": [e.to_dict() for e in self.selected],
            "skipped": [s.to_dict() for s in self.skipped],
        }


@dataclass
class LockResult:
    """Outcome of a lock acquisition attempt."""

    ok: bool
    path: str
    stale_replaced: bool = False
    reason: str | None = None


@dataclass
class LedgerEntry:
    """One line of the append-only ledger."""

    timestamp: str
    action: str
    work_id: str | None = None
    from_stage: str | None = None
    to_stage: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": self.timestamp, "action": self.action}
        if self.work_id is not None:
            data["work_id"] = self.work_id
        if self.from_stage is not None or self.to_stage is not None:
            data["from_stage"] = self.from_stage
            data["to_stage"] = self.to_stage
        if self.details:
            data["details"] = self.details
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LedgerEntry":
        return cls(
            timestamp=str(data.get("timestamp", "")),
            action=str(data.get("action", "")),
            work_id=data.get("work_id"),
            from_stage=data.get("from_stage"),
            to_stage=data.get("to_stage"),
            details=dict(data.get("details") or {}),
        )


@dataclass
class FailureReport:
    """Structured form of a written failure report."""

    work_id: str
    title: str
    reason: str
    timestamp: str
    path: str
    body: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_id": self.work_id,
            "title": self.title,
            "reason": self.reason,
            "timestamp": self.timestamp,
            "body": list(self.body),
        }


@dataclass
class CollaboratorResult:
    """Result returned by every external collaborator call."""

    ok: bool
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class GateDecision:
    """Outcome of an approval gate request.

    ``ok`` reports whether the gate could evaluate at all; ``status`` is the
    decision itself. A gate may succeed (``ok=True``) and still leave the
    approval ``pending``.
    """

    ok: bool
    gate: str
    status: str | None = None
    message: str = ""
    reason_codes: list[str] = field(default_factory=list)
    record_path: str | None = None


@dataclass
class AdvancedItem:
    work_id: str
    result: str
    from_stage: str | None = None
    to_stage: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FailedItem:
    work_id: str
    reason: str
    report: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RunResult:
    """Result of one watchdog run.

    ``ok`` is False iff at least one item failed or the run could not start.
    """

    ok: bool
    message: str = ""
    schedule_path: str | None = None
    selected: list[str] = field(default_factory=list)
    advanced: list[AdvancedItem] = field(default_factory=list)
    failed: list[FailedItem] = field(default_factory=list)
    skipped: list[ScheduleSkip] = field(default_factory=list)

    def skip_reason(self, work_id: str) -> str | None:
        for skip in self.skipped:
            if skip.work_id == work_id:
                return skip.reason
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "message": self.message,
            "schedule_path": self.schedule_path,
            "selected": list(self.selected),
            "advanced": [a.to_dict() for a in self.advanced],
            "failed": [f.to_dict() for f in self.failed],
            "skipped": [s.to_dict() for s in self.skipped],
        }
