"""Tests for repo_conductor.engine.gates.merge_approval."""

import json

import pytest
import pytest_asyncio
from conftest import FAILED_CI, GREEN_CI, write_json_file

from repo_conductor.engine.gates.merge_approval import MergeApprovalGate
from repo_conductor.engine.knowledge_events import KnowledgeEventLog
from repo_conductor.exceptions import ArtifactInvalidError, ArtifactMissingError, GateError
from repo_conductor.models.stages import Stage


@pytest.fixture
def events_dir(tmp_path):
    return tmp_path / "knowledge-events"


@pytest.fixture
def gate(store, loader, status_writer, ledger, paths, events_dir):
    return MergeApprovalGate(store, loader, status_writer, ledger, paths, KnowledgeEventLog(events_dir))


@pytest_asyncio.fixture
async def green(seed_item, write_bundle, paths):
    """A CI_GREEN work item with bundle, PR and green CI."""
    await seed_item("W-1", stage=Stage.CI_GREEN)
    write_bundle("W-1")
    write_json_file(paths.pr("W-1"), {"head_branch": "ai/W-1/svc-api/change", "pr_number": 12})
    write_json_file(paths.ci_status("W-1"), GREEN_CI)
    return "W-1"


class TestRequest:
    """Requesting merge approval."""

    @pytest.mark.asyncio
    async def test_request_pins_head_and_blocks(self, gate, green, store, ledger, paths):
        decision = await gate.request(green)

        assert decision.ok
        assert decision.status == "pending"
        record = json.loads(paths.merge_approval_json("W-1").read_text())
        assert record["head_sha"] == "abc123"
        assert record["bundle_hash"] == "bundle-hash-1"
        assert record["mode"] == "manual"
        item = await store.get("W-1")
        assert item.current_stage is Stage.MERGE_APPROVAL_PENDING
        assert item.blocked
        assert item.blocking_reason == "merge_approval_pending"
        assert (await ledger.read())[-1].action == "merge_approval_requested"

    @pytest.mark.asyncio
    async def test_failed_ci_is_refused_without_mutation(self, gate, green, store, ledger, paths):
        write_json_file(paths.ci_status("W-1"), FAILED_CI)
        before = paths.status_md("W-1").read_text()

        decision = await gate.request(green)

        assert not decision.ok
        assert "failure" in decision.message
        assert paths.status_md("W-1").read_text() == before
        assert not paths.merge_approval_json("W-1").exists()
        assert await ledger.read() == []

    @pytest.mark.asyncio
    async def test_requires_ci_green_stage(self, gate, seed_item):
        await seed_item("W-1", stage=Stage.CI_PENDING)

        decision = await gate.request("W-1")

        assert not decision.ok
        assert "CI_PENDING" in decision.message

    @pytest.mark.asyncio
    async def test_requires_pr_record(self, gate, green, paths):
        paths.pr("W-1").unlink()

        decision = await gate.request(green)

        assert not decision.ok
        assert "PR record" in decision.message

    @pytest.mark.asyncio
    async def test_missing_ci_snapshot(self, gate, green, paths):
        paths.ci_status("W-1").unlink()

        decision = await gate.request(green)

        assert not decision.ok
        assert "CI snapshot" in decision.message

    @pytest.mark.asyncio
    async def test_dry_run(self, gate, green, store, paths):
        decision = await gate.request(green, dry_run=True)

        assert decision.ok
        assert not paths.merge_approval_json("W-1").exists()
        assert (await store.get("W-1")).current_stage is Stage.CI_GREEN


class TestApprove:
    """Approving merges against pinned, green CI."""

    @pytest.mark.asyncio
    async def test_approve_emits_merge_event(self, gate, green, store, ledger, events_dir):
        await gate.request(green)

        decision = await gate.approve("W-1", approved_by="bob", notes="ship it")

        assert decision.ok
        assert decision.status == "approved"
        item = await store.get("W-1")
        assert item.current_stage is Stage.MERGE_APPROVAL_APPROVED
        assert not item.blocked

        index = json.loads((events_dir / "index.json").read_text())
        assert index["events_total"] == 1
        segment = events_dir / "segments" / index["active_segment"]
        event = json.loads(segment.read_text().splitlines()[0])
        assert event["type"] == "merge"
        assert event["repo_id"] == "svc-api"
        assert event["scope"] == "repo:svc-api"
        assert event["pr_number"] == 12
        assert event["commit"] == "abc123"
        assert event["artifacts"]["fingerprints"] == ["bundle:bundle-hash-1"]

        actions = [e.action for e in await ledger.read()]
        assert actions[-2:] == ["merge_approval_approved", "knowledge_event_emitted"]

    @pytest.mark.asyncio
    async def test_head_change_is_refused(self, gate, green, store, paths):
        await gate.request(green)
        write_json_file(paths.ci_status("W-1"), {**GREEN_CI, "head_sha": "def456"})

        decision = await gate.approve("W-1")

        assert not decision.ok
        assert "does not match" in decision.message
        assert (await store.get("W-1")).current_stage is Stage.MERGE_APPROVAL_PENDING

    @pytest.mark.asyncio
    async def test_red_ci_is_refused(self, gate, green, store, paths):
        await gate.request(green)
        write_json_file(paths.ci_status("W-1"), FAILED_CI)

        decision = await gate.approve("W-1")

        assert not decision.ok
        assert (await store.get("W-1")).current_stage is Stage.MERGE_APPROVAL_PENDING
        record = json.loads(paths.merge_approval_json("W-1").read_text())
        assert record["status"] == "pending"

    @pytest.mark.asyncio
    async def test_approve_without_record(self, gate, green):
        decision = await gate.approve(green)

        assert not decision.ok
        assert "record" in decision.message

    @pytest.mark.asyncio
    async def test_event_failure_keeps_approval(self, store, loader, status_writer, ledger, paths, green, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file")
        gate = MergeApprovalGate(store, loader, status_writer, ledger, paths, KnowledgeEventLog(blocker / "events"))
        await gate.request(green)

        decision = await gate.approve("W-1")

        assert decision.ok
        assert (await store.get("W-1")).current_stage is Stage.MERGE_APPROVAL_APPROVED
        assert (await ledger.read())[-1].action == "knowledge_event_emit_failed"


class TestMergeReady:
    @pytest.mark.asyncio
    async def test_ready_after_approval(self, gate, green):
        await gate.request(green)
        assert not await gate.merge_ready("W-1")

        await gate.approve("W-1")

        assert await gate.merge_ready("W-1")

    @pytest.mark.asyncio
    async def test_not_ready_when_ci_turns_red(self, gate, green, paths):
        await gate.request(green)
        await gate.approve("W-1")
        write_json_file(paths.ci_status("W-1"), FAILED_CI)

        assert not await gate.merge_ready("W-1")


class TestGreenSnapshot:
    """CI preconditions shared by request, approve and merge_ready."""

    @pytest.mark.asyncio
    async def test_missing_snapshot_raises_gate_error(self, gate, green, paths):
        paths.ci_status("W-1").unlink()

        with pytest.raises(GateError) as exc_info:
            await gate._green_snapshot(green)

        assert exc_info.value.gate == "merge"
        assert isinstance(exc_info.value.__cause__, ArtifactMissingError)

    @pytest.mark.asyncio
    async def test_non_utf8_snapshot_raises_gate_error(self, gate, green, paths):
        paths.ci_status("W-1").write_bytes(b'{"overall": "\xff"}')

        with pytest.raises(GateError) as exc_info:
            await gate._green_snapshot(green)

        assert isinstance(exc_info.value.__cause__, ArtifactInvalidError)
        assert "invalid UTF-8" in exc_info.value.__cause__.errors[0]

    @pytest.mark.asyncio
    async def test_red_snapshot_raises_gate_error(self, gate, green, paths):
        write_json_file(paths.ci_status("W-1"), FAILED_CI)

        with pytest.raises(GateError, match="CI not green"):
            await gate._green_snapshot(green)
