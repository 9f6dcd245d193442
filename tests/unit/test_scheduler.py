"""Tests for repo_conductor.engine.scheduler."""

import json

import pytest
from conftest import write_json_file

from repo_conductor.config.settings import RunOptions, SchedulerConfig
from repo_conductor.engine.scheduler import Scheduler, created_at_for
from repo_conductor.exceptions import ScheduleError
from repo_conductor.models.artifacts import RoutingRecord
from repo_conductor.models.domain import WorkItem
from repo_conductor.models.stages import Stage


@pytest.fixture
def scheduler(store, loader, ledger, paths):
    return Scheduler(SchedulerConfig(), store, loader, ledger, paths)


class TestCreatedAtFor:
    """Fallback creation timestamps."""

    def test_prefers_routing_timestamp(self):
        routing = RoutingRecord(timestamp=" 2024-02-01T00:00:00Z ")
        item = WorkItem(work_id="W-1", last_updated="2024-03-01T00:00:00Z")
        assert created_at_for("W-1", routing, item) == "2024-02-01T00:00:00Z"

    def test_falls_back_to_last_updated(self):
        item = WorkItem(work_id="W-1", last_updated="2024-03-01T00:00:00Z")
        assert created_at_for("W-1", None, item) == "2024-03-01T00:00:00Z"

    def test_timestamp_encoded_in_work_id(self):
        assert created_at_for("W-2024-04-01T10:00:00Z-ab12", None, None) == "2024-04-01T10:00:00Z"

    def test_now_when_nothing_known(self):
        assert created_at_for("W-x", None, None).endswith("Z")


class TestSelection:
    """Ordering and limits."""

    @pytest.mark.asyncio
    async def test_orders_by_created_at_then_work_id(self, scheduler, seed_item):
        await seed_item("W-c", created_at="2024-01-02T00:00:00Z")
        await seed_item("W-b", created_at="2024-01-01T00:00:00Z")
        await seed_item("W-a", created_at="2024-01-02T00:00:00Z")

        schedule = await scheduler.compute_schedule(RunOptions())

        assert schedule.selected_ids == ["W-b", "W-a", "W-c"]
        assert schedule.selected[0].score == {"priority": 50, "created_at": "2024-01-01T00:00:00Z"}

    @pytest.mark.asyncio
    async def test_orders_by_priority(self, scheduler, seed_item):
        await seed_item("W-a", created_at="2024-01-01T00:00:00Z", priority=10)
        await seed_item("W-b", created_at="2024-01-02T00:00:00Z", priority=90)

        schedule = await scheduler.compute_schedule(RunOptions(), order_by="priority")

        assert schedule.selected_ids == ["W-b", "W-a"]

    @pytest.mark.asyncio
    async def test_unknown_order_raises(self, scheduler):
        with pytest.raises(ScheduleError):
            await scheduler.compute_schedule(RunOptions(), order_by="random")

    @pytest.mark.asyncio
    async def test_limit_is_min_of_config_and_option(self, store, loader, ledger, paths, seed_item):
        for i in range(5):
            await seed_item(f"W-{i}", created_at=f"2024-01-0{i + 1}T00:00:00Z")
        scheduler = Scheduler(SchedulerConfig(max_items_per_run=3), store, loader, ledger, paths)

        assert len((await scheduler.compute_schedule(RunOptions(limit=2))).selected) == 2
        assert len((await scheduler.compute_schedule(RunOptions(limit=10))).selected) == 3

    @pytest.mark.asyncio
    async def test_queue_file_restricts_and_orders(self, scheduler, seed_item, paths):
        await seed_item("W-a", created_at="2024-01-01T00:00:00Z")
        await seed_item("W-b", created_at="2024-01-02T00:00:00Z")
        await seed_item("W-c", created_at="2024-01-03T00:00:00Z")
        write_json_file(paths.queue, {"work_ids": ["W-c", "W-missing", "W-a"]})

        schedule = await scheduler.compute_schedule(RunOptions())

        assert schedule.selected_ids == ["W-c", "W-a"]
        assert [(s.work_id, s.reason) for s in schedule.skipped] == [("W-missing", "missing_work_dir")]

    @pytest.mark.asyncio
    async def test_work_id_option_is_an_allowlist(self, scheduler, seed_item):
        await seed_item("W-a")
        await seed_item("W-b")

        schedule = await scheduler.compute_schedule(RunOptions(work_id="W-b"))

        assert schedule.selected_ids == ["W-b"]

    @pytest.mark.asyncio
    async def test_schedule_is_deterministic(self, scheduler, seed_item):
        for work_id in ("W-3", "W-1", "W-2"):
            await seed_item(work_id)

        first = await scheduler.compute_schedule(RunOptions())
        second = await scheduler.compute_schedule(RunOptions())

        assert first.selected_ids == second.selected_ids == ["W-1", "W-2", "W-3"]


class TestSkips:
    """Items the scheduler does not select."""

    @pytest.mark.asyncio
    async def test_blocked_terminal_and_stop_stage(self, scheduler, seed_item):
        await seed_item("W-blocked", blocked=True, blocking_reason="needs_human")
        await seed_item("W-done", stage=Stage.DONE)
        await seed_item("W-failed", stage=Stage.FAILED)
        await seed_item("W-pending", stage=Stage.APPLY_APPROVAL_PENDING)
        await seed_item("W-ok", stage=Stage.ROUTED)

        schedule = await scheduler.compute_schedule(RunOptions())

        assert schedule.selected_ids == ["W-ok"]
        reasons = {s.work_id: s.reason for s in schedule.skipped}
        assert reasons == {
            "W-blocked": "blocked:needs_human",
            "W-done": "terminal:DONE",
            "W-failed": "terminal:FAILED",
            "W-pending": "already_at:APPLY_APPROVAL_PENDING",
        }

    @pytest.mark.asyncio
    async def test_ci_eligible_items_are_readmitted(self, scheduler, seed_item):
        await seed_item("W-applied", stage=Stage.APPLIED)
        await seed_item("W-ci", stage=Stage.CI_PENDING)
        await seed_item("W-green", stage=Stage.CI_GREEN)

        schedule = await scheduler.compute_schedule(RunOptions())

        assert schedule.selected_ids == ["W-applied", "W-ci"]
        assert schedule.skipped[0].reason == "already_at:CI_GREEN"

    @pytest.mark.asyncio
    async def test_no_readmission_when_ci_disabled(self, scheduler, seed_item):
        await seed_item("W-ci", stage=Stage.CI_PENDING)

        schedule = await scheduler.compute_schedule(RunOptions(ci_enabled=False))

        assert schedule.selected_ids == []
        assert schedule.skipped[0].reason == "already_at:CI_PENDING"

    @pytest.mark.asyncio
    async def test_unmet_dependencies(self, scheduler, seed_item):
        await seed_item("W-dep-done", stage=Stage.DONE)
        await seed_item("W-dep-open", stage=Stage.ROUTED)
        await seed_item("W-x", depends_on=["W-dep-done", "W-dep-open", "W-unknown"])

        schedule = await scheduler.compute_schedule(RunOptions())

        reasons = {s.work_id: s.reason for s in schedule.skipped}
        assert reasons["W-x"] == "dependencies:W-dep-open,W-unknown"
        assert "W-dep-open" in schedule.selected_ids

    @pytest.mark.asyncio
    async def test_repo_concurrency(self, scheduler, seed_item, write_routing, paths):
        await seed_item("W-active", stage=Stage.APPLYING)
        write_routing("W-active", repos=["svc-api"])
        await seed_item("W-next", stage=Stage.ROUTED)
        write_routing("W-next", repos=["svc-api", "svc-web"])
        await seed_item("W-other", stage=Stage.ROUTED)
        write_routing("W-other", repos=["svc-web"])

        schedule = await scheduler.compute_schedule(RunOptions())

        reasons = {s.work_id: s.reason for s in schedule.skipped}
        assert reasons["W-next"] == "repo_concurrency:svc-api"
        assert schedule.selected_ids == ["W-other"]

    @pytest.mark.asyncio
    async def test_worktrees_mark_an_item_active(self, scheduler, seed_item, paths):
        await seed_item("W-wt", stage=Stage.ROUTED, repo_scopes=["svc-api"])
        (paths.worktrees("W-wt") / "svc-api").mkdir(parents=True)
        await seed_item("W-next", stage=Stage.ROUTED, repo_scopes=["svc-api"])

        schedule = await scheduler.compute_schedule(RunOptions())

        assert schedule.selected_ids == ["W-wt"]
        assert schedule.skipped[0].reason == "repo_concurrency:svc-api"

    @pytest.mark.asyncio
    async def test_invalid_stage(self, scheduler, paths):
        write_json_file(paths.meta("W-bad"), {"version": 1, "created_at": "2024-01-01T00:00:00Z"})
        paths.status_md("W-bad").write_text(
            "<!-- STATUS_SNAPSHOT_BEGIN -->\n```json\n{\"current_stage\": \"LIMBO\"}\n```\n"
            "<!-- STATUS_SNAPSHOT_END -->\n"
        )

        schedule = await scheduler.compute_schedule(RunOptions())

        assert [(s.work_id, s.reason) for s in schedule.skipped] == [("W-bad", "invalid_stage:LIMBO")]

    @pytest.mark.asyncio
    async def test_skips_are_sorted_by_work_id(self, scheduler, seed_item):
        await seed_item("W-z", stage=Stage.DONE)
        await seed_item("W-a", stage=Stage.DONE)

        schedule = await scheduler.compute_schedule(RunOptions())

        assert [s.work_id for s in schedule.skipped] == ["W-a", "W-z"]


class TestSideEffects:
    """Files written by a schedule computation."""

    @pytest.mark.asyncio
    async def test_writes_schedule_and_ledger(self, scheduler, seed_item, paths, ledger):
        await seed_item("W-1")

        schedule = await scheduler.compute_schedule(RunOptions())

        written = json.loads(paths.schedule.read_text())
        assert [e["work_id"] for e in written["selected"]] == ["W-1"]
        assert schedule.path == "schedule/SCHEDULE.json"
        entries = await ledger.read()
        assert [e.action for e in entries] == ["schedule_computed"]
        assert entries[0].details["selected_count"] == 1

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, scheduler, store, paths, ledger):
        await store.put(WorkItem(work_id="W-1", last_updated="2024-01-01T00:00:00Z"))

        schedule = await scheduler.compute_schedule(RunOptions(dry_run=True))

        assert schedule.selected_ids == ["W-1"]
        assert not paths.schedule.exists()
        assert not paths.meta("W-1").exists()
        assert await ledger.read() == []

    @pytest.mark.asyncio
    async def test_never_changes_status(self, scheduler, seed_item, paths):
        await seed_item("W-1", stage=Stage.BUNDLED)
        before = paths.status_md("W-1").read_text()

        await scheduler.compute_schedule(RunOptions())

        assert paths.status_md("W-1").read_text() == before


class TestEnsureMeta:
    """Additive META.json backfill."""

    @pytest.mark.asyncio
    async def test_creates_meta_from_routing(self, scheduler, store, write_routing, paths):
        await store.put(WorkItem(work_id="W-1"))
        write_routing(
            "W-1",
            repos=["svc-api"],
            routing_mode="repo_explicit",
            timestamp="2024-05-05T05:05:05Z",
            target_branch={"name": "release/1.2", "source": "explicit"},
        )

        await scheduler.compute_schedule(RunOptions())

        meta = json.loads(paths.meta("W-1").read_text())
        assert meta["created_at"] == "2024-05-05T05:05:05Z"
        assert meta["repo_scopes"] == ["svc-api"]
        assert meta["target_branch"] == "release/1.2"
        assert meta["priority"] == 50

    @pytest.mark.asyncio
    async def test_backfill_keeps_user_values(self, scheduler, store, paths):
        await store.put(WorkItem(work_id="W-1", last_updated="2024-01-01T00:00:00Z"))
        write_json_file(paths.meta("W-1"), {"version": 1, "priority": "urgent", "owner": "team-a"})

        meta = await scheduler.ensure_meta("W-1", None, await store.get("W-1"))

        raw = json.loads(paths.meta("W-1").read_text())
        assert raw["owner"] == "team-a"
        assert raw["priority"] == 50
        assert raw["created_at"] == "2024-01-01T00:00:00Z"
        assert raw["depends_on"] == []
        assert meta.priority == 50

    @pytest.mark.asyncio
    async def test_unchanged_meta_is_not_rewritten(self, scheduler, seed_item, paths):
        await seed_item("W-1")
        mtime = paths.meta("W-1").stat().st_mtime_ns

        await scheduler.ensure_meta("W-1", None, None)

        assert paths.meta("W-1").stat().st_mtime_ns == mtime
