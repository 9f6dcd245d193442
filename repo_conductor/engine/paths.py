"""On-disk layout of the orchestration state.

Every file the engine reads or writes is addressed through ``StatePaths`` so
the external file contracts are defined in one place.
"""

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class StatePaths:
    """Paths under the state root."""

    root: Path

    @property
    def ledger(self) -> Path:
        return self.root / "ledger.jsonl"

    @property
    def global_lock(self) -> Path:
        return self.root / ".watchdog.lock"

    @property
    def global_status(self) -> Path:
        return self.root / "STATUS.md"

    @property
    def work_root(self) -> Path:
        return self.root / "work"

    @property
    def schedule_dir(self) -> Path:
        return self.root / "schedule"

    @property
    def queue(self) -> Path:
        return self.schedule_dir / "QUEUE.json"

    @property
    def schedule(self) -> Path:
        return self.schedule_dir / "SCHEDULE.json"

    def work_dir(self, work_id: str) -> Path:
        return self.work_root / work_id

    def work_lock(self, work_id: str) -> Path:
        return self.work_dir(work_id) / ".lock"

    def meta(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "META.json"

    def status_md(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "STATUS.md"

    def status_json(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "status.json"

    def status_history(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "status-history.json"

    def routing(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "ROUTING.json"

    def tasks_dir(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "tasks"

    def task_file(self, work_id: str, team: str) -> Path:
        return self.tasks_dir(work_id) / f"{team}.md"

    def bundle(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "BUNDLE.json"

    def qa_plan(self, work_id: str, repo_id: str) -> Path:
        return self.work_dir(work_id) / "qa" / f"qa-plan.{repo_id}.json"

    def ssot_drift(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "SSOT_DRIFT.json"

    def apply_approval_json(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "APPLY_APPROVAL.json"

    def apply_approval_md(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "APPLY_APPROVAL.md"

    def merge_approval_json(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "MERGE_APPROVAL.json"

    def merge_approval_md(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "MERGE_APPROVAL.md"

    def pr(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "PR.json"

    def ci_status(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "CI" / "CI_Status.json"

    def worktrees(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "worktrees"

    def failure_report_md(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "failure-reports" / "watchdog.md"

    def failure_report_json(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "failure-reports" / "watchdog.json"

    def propose_failed(self, work_id: str) -> Path:
        return self.work_dir(work_id) / "errors" / "PROPOSE_FAILED.md"

    def resolve_artifact(self, work_id: str, raw: str) -> Path:
        """Resolve a path recorded inside an artifact.

        Relative paths are relative to the work item directory.
        """
        path = Path(raw)
        return path if path.is_absolute() else self.work_dir(work_id) / path

    def relative(self, path: Path) -> str:
        """Render ``path`` relative to the state root for status and ledger output."""
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return path.as_posix()
