"""Failure reports.

A failed work item always gets three things, written in this order: a failure
report (markdown plus structured JSON), a ``FAILED`` status snapshot with
``blocked=true`` and a specific blocking reason, and a ``watchdog_failed``
ledger entry. The last two are written together by the status writer.
"""

import structlog

from repo_conductor.engine.paths import StatePaths
from repo_conductor.engine.status_writer import StatusWriter
from repo_conductor.models.domain import FailedItem, FailureReport
from repo_conductor.models.stages import Stage
from repo_conductor.utils.jsonio import utc_now_iso, write_json, write_text_atomic

log = structlog.get_logger(__name__)


class FailureReporter:
    def __init__(self, paths: StatePaths, status_writer: StatusWriter) -> None:
        self.paths = paths
        self.status_writer = status_writer

    async def write_failure_report(
        self,
        work_id: str,
        title: str,
        body: list[str],
        reason: str = "",
    ) -> FailureReport:
        md_path = self.paths.failure_report_md(work_id)
        timestamp = utc_now_iso()
        report = FailureReport(
            work_id=work_id,
            title=title,
            reason=reason,
            timestamp=timestamp,
            path=self.paths.relative(md_path),
            body=[str(line) for line in body],
        )
        lines = [f"# Watchdog failure: {work_id}", "", f"Timestamp: {timestamp}", ""]
        if reason:
            lines += [f"Reason: `{reason}`", ""]
        lines += [f"## {title}", "", *report.body, ""]

        await write_text_atomic(md_path, "\n".join(lines))
        await write_json(self.paths.failure_report_json(work_id), report.to_dict())
        return report

    async def write_propose_failed(self, work_id: str, body: list[str]) -> str:
        path = self.paths.propose_failed(work_id)
        lines = [f"# PROPOSE_FAILED: {work_id}", "", f"Timestamp: {utc_now_iso()}", "", *body, ""]
        await write_text_atomic(path, "\n".join(lines))
        return self.paths.relative(path)

    async def fail(
        self,
        work_id: str,
        reason: str,
        title: str,
        body: list[str],
        artifacts: dict[str, str] | None = None,
    ) -> FailedItem:
        """Mark a work item FAILED with a report, a snapshot and a ledger entry."""
        report = await self.write_failure_report(work_id, title, body, reason=reason)
        await self.status_writer.update_status(
            work_id,
            Stage.FAILED,
            blocked=True,
            blocking_reason=reason,
            artifacts={"watchdog_report": report.path, **(artifacts or {})},
            note=reason,
            action="watchdog_failed",
            details={"reason": reason, "report": report.path},
        )
        log.error("work_failed", work_id=work_id, reason=reason, report=report.path)
        return FailedItem(work_id=work_id, reason=reason, report=report.path)
