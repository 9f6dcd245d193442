"""Tests for the repo-conductor CLI."""

import asyncio
import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from repo_conductor.main import cli
from repo_conductor.models.stages import Stage


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, tmp_path, state_root):
    """Invoke the CLI against the temporary state root without a config file."""

    def _invoke(*args):
        with patch("repo_conductor.main.configure_logging"):
            return runner.invoke(
                cli,
                ["--config", str(tmp_path / "missing.yaml"), "--state-root", str(state_root), *args],
            )

    return _invoke


@pytest.fixture
def seeded(seed_item, write_routing):
    """Seed work items synchronously, before the CLI starts its own event loop."""

    def _seed(work_id, **kwargs):
        item = asyncio.run(seed_item(work_id, **kwargs))
        write_routing(work_id)
        return item

    return _seed


class TestRunCommand:
    """Tests for the run command."""

    def test_run_advances_one_step(self, invoke, seeded, paths):
        seeded("W-1")

        result = invoke("run")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["ok"] is True
        assert data["selected"] == ["W-1"]
        assert data["advanced"] == [
            {"work_id": "W-1", "result": "advanced", "from_stage": "INTAKE_RECEIVED", "to_stage": "ROUTED"}
        ]
        assert "ROUTED" in paths.status_md("W-1").read_text()

    def test_run_failure_exits_non_zero(self, invoke, seed_item):
        asyncio.run(seed_item("W-1"))

        result = invoke("run")

        assert result.exit_code == 1
        assert '"watchdog_missing_routing"' in result.output

    def test_dry_run(self, invoke, seeded, paths):
        seeded("W-1")

        result = invoke("run", "--dry-run")

        assert result.exit_code == 0
        assert json.loads(result.output)["skipped"] == [{"work_id": "W-1", "reason": "dry_run", "repos": []}]
        assert not paths.ledger.exists()

    def test_legacy_stop_stage_is_accepted(self, invoke, seeded):
        seeded("W-1", stage=Stage.APPLY_APPROVAL_PENDING)

        result = invoke("run", "--stop-at", "GATE_A_PENDING")

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["skipped"][0]["reason"] == "already_at:APPLY_APPROVAL_PENDING"

    def test_invalid_stop_stage(self, invoke):
        result = invoke("run", "--stop-at", "NOWHERE")

        assert result.exit_code == 2
        assert "NOWHERE" in result.output


class TestScheduleCommand:
    """Tests for the schedule command."""

    def test_schedule_writes_schedule_and_releases_lock(self, invoke, seeded, paths):
        seeded("W-1")

        result = invoke("schedule")

        assert result.exit_code == 0, result.output
        assert json.loads(paths.schedule.read_text())["selected"][0]["work_id"] == "W-1"
        assert not paths.global_lock.exists()

    def test_schedule_refused_while_global_lock_held(self, invoke, seeded, paths):
        seeded("W-1")
        paths.global_lock.write_text("{}")

        result = invoke("schedule")

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert not paths.schedule.exists()

    def test_schedule_dry_run_writes_nothing(self, invoke, seeded, paths):
        seeded("W-1")
        seeded("W-2", stage=Stage.DONE)

        result = invoke("schedule", "--dry-run")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert [entry["work_id"] for entry in data["selected"]] == ["W-1"]
        assert not paths.schedule.exists()


class TestStatusCommand:
    """Tests for the status command."""

    def test_empty_state(self, invoke):
        result = invoke("status")

        assert result.exit_code == 0
        assert "No work items." in result.output

    def test_lists_items(self, invoke, seeded):
        seeded("W-1")
        seeded("W-2", stage=Stage.APPLY_APPROVAL_PENDING, blocked=True, blocking_reason="apply_approval_pending")

        result = invoke("status")

        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert lines == ["W-1\tINTAKE_RECEIVED", "W-2\tAPPLY_APPROVAL_PENDING blocked:apply_approval_pending"]

    def test_single_item_snapshot(self, invoke, seeded):
        seeded("W-1", stage=Stage.ROUTED)

        result = invoke("status", "W-1")

        assert result.exit_code == 0
        assert json.loads(result.output)["current_stage"] == "ROUTED"

    def test_unknown_item(self, invoke):
        result = invoke("status", "W-404")

        assert result.exit_code == 1
        assert "No status for work item W-404" in result.output


class TestApprovalCommands:
    """Tests for the approval gate commands."""

    def test_apply_approval_request(self, invoke, seed_item, write_bundle, paths):
        asyncio.run(seed_item("W-1", stage=Stage.BUNDLED))
        write_bundle("W-1")

        result = invoke("apply-approval", "request", "W-1")

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["ok"] is True
        assert data["status"] == "approved"
        assert data["reason_codes"] == []
        assert paths.apply_approval_json("W-1").exists()
        assert not paths.work_lock("W-1").exists()

    def test_merge_approval_request_refused(self, invoke, seeded):
        seeded("W-1", stage=Stage.CI_PENDING)

        result = invoke("merge-approval", "request", "W-1")

        assert result.exit_code == 1
        assert json.loads(result.output)["ok"] is False

    def test_locked_item(self, invoke, seeded, paths):
        seeded("W-1", stage=Stage.BUNDLED)
        paths.work_lock("W-1").write_text("{}")

        result = invoke("apply-approval", "approve", "W-1")

        assert result.exit_code == 1
        assert "Error:" in result.output


class TestUnlockCommand:
    """Tests for the unlock command."""

    def test_requires_target(self, invoke):
        result = invoke("unlock")

        assert result.exit_code == 1
        assert "Give a WORK_ID or --global" in result.output

    def test_releases_work_lock(self, invoke, seeded, paths, ledger):
        seeded("W-1")
        paths.work_lock("W-1").write_text(json.dumps({"pid": 1}))

        result = invoke("unlock", "W-1")

        assert result.exit_code == 0
        assert "Released" in result.output
        assert not paths.work_lock("W-1").exists()
        entry = asyncio.run(ledger.read())[-1]
        assert entry.action == "lock_released_manually"
        assert entry.work_id == "W-1"

    def test_releases_global_lock(self, invoke, paths):
        paths.root.mkdir(parents=True)
        paths.global_lock.write_text("{}")

        result = invoke("unlock", "--global")

        assert result.exit_code == 0
        assert not paths.global_lock.exists()
