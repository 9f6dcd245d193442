"""Tests for repo_conductor.engine.failure_reporter."""

import json

import pytest

from repo_conductor.engine.failure_reporter import FailureReporter
from repo_conductor.models.stages import Stage


@pytest.fixture
def reporter(paths, status_writer):
    return FailureReporter(paths, status_writer)


class TestFailureReporter:
    """Failure report, FAILED snapshot and ledger entry."""

    @pytest.mark.asyncio
    async def test_fail_writes_report_status_and_ledger(self, reporter, seed_item, store, ledger, paths):
        await seed_item("W-1", stage=Stage.ROUTED)

        failed = await reporter.fail("W-1", "watchdog_missing_teams", "Routing selected no teams", ["empty"])

        assert failed.reason == "watchdog_missing_teams"
        assert failed.report == "work/W-1/failure-reports/watchdog.md"
        markdown = paths.failure_report_md("W-1").read_text()
        assert "# Watchdog failure: W-1" in markdown
        assert "Reason: `watchdog_missing_teams`" in markdown
        assert "## Routing selected no teams" in markdown
        report = json.loads(paths.failure_report_json("W-1").read_text())
        assert report["body"] == ["empty"]

        item = await store.get("W-1")
        assert item.current_stage is Stage.FAILED
        assert item.blocked
        assert item.blocking_reason == "watchdog_missing_teams"
        assert item.artifacts["watchdog_report"] == failed.report

        entries = await ledger.read()
        assert entries[-1].action == "watchdog_failed"
        assert entries[-1].from_stage == "ROUTED"
        assert entries[-1].details["reason"] == "watchdog_missing_teams"

    @pytest.mark.asyncio
    async def test_extra_artifacts_are_recorded(self, reporter, seed_item, store):
        await seed_item("W-1", stage=Stage.SWEEP_READY)

        await reporter.fail("W-1", "PROPOSAL_FAILED", "Proposal failed", [], artifacts={"propose_failed": "x.md"})

        assert (await store.get("W-1")).artifacts["propose_failed"] == "x.md"

    @pytest.mark.asyncio
    async def test_write_propose_failed(self, reporter, paths):
        path = await reporter.write_propose_failed("W-1", ["propose exited 2"])

        assert path == "work/W-1/errors/PROPOSE_FAILED.md"
        assert "propose exited 2" in paths.propose_failed("W-1").read_text()
