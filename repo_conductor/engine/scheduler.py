"""
Scheduler: selects and orders the batch of work items for one run.

The schedule is a pure function of the on-disk state and the run options.
There is no randomness and no wall-clock dependent ordering, so a rerun over
unchanged state selects the same items in the same order.

Selection Rules:
    - An explicit ``work_id`` or a non-empty queue file restricts the
      candidates to that allowlist, and the queue order wins.
    - Otherwise candidates are ordered by ``created_at`` (then ``work_id``),
      or by ``priority`` when requested.
    - Blocked, terminal and dependency-waiting items are skipped, as are items
      whose repositories are already at their active-work limit.
    - Items at or past the stop stage are skipped, except CI-eligible post-PR
      items while CI dispatch is enabled: CI promotion is independent of the
      pre-PR stop point.
    - At most ``min(max_items_per_run, limit)`` items are selected.

The scheduler never changes a work item's status. Its only writes are the
additive ``META.json`` backfill, ``SCHEDULE.json`` and a ``schedule_computed``
ledger line, all skipped in dry-run mode.
"""

import json
import re
from datetime import datetime
from typing import Any

import structlog

from repo_conductor.config.settings import RunOptions, SchedulerConfig
from repo_conductor.engine.artifacts import ArtifactLoader, Found
from repo_conductor.engine.ledger import Ledger
from repo_conductor.engine.paths import StatePaths
from repo_conductor.engine.store import WorkItemStore
from repo_conductor.exceptions import ArtifactInvalidError, ScheduleError, UnknownStageError
from repo_conductor.models.artifacts import RoutingRecord
from repo_conductor.models.domain import (
    DEFAULT_PRIORITY,
    Schedule,
    ScheduleEntry,
    ScheduleSkip,
    WorkItem,
    WorkMeta,
)
from repo_conductor.models.stages import Stage
from repo_conductor.utils.jsonio import read_text_if_exists, utc_now_iso, write_json

log = structlog.get_logger(__name__)

ORDER_QUEUE = "queue"
ORDER_CREATED_AT = "created_at"
ORDER_PRIORITY = "priority"

_WORK_ID_TS = re.compile(r"^W-(.+)-[0-9a-f]+$", re.IGNORECASE)

_META_LIST_KEYS = ("depends_on", "blocks", "labels", "repo_scopes")


def created_at_for(work_id: str, routing: RoutingRecord | None, item: WorkItem | None) -> str:
    """Best-effort creation timestamp for a work item without one recorded."""
    if routing is not None and routing.timestamp and routing.timestamp.strip():
        return routing.timestamp.strip()
    if item is not None and item.last_updated:
        return item.last_updated
    match = _WORK_ID_TS.match(work_id)
    if match:
        raw = match.group(1)
        try:
            datetime.fromisoformat(raw.replace("Z", "+00:00"))
            return raw
        except ValueError:
            pass
    return utc_now_iso()


class Scheduler:
    """Computes the per-run schedule."""

    def __init__(
        self,
        config: SchedulerConfig,
        store: WorkItemStore,
        loader: ArtifactLoader,
        ledger: Ledger,
        paths: StatePaths,
    ) -> None:
        self.config = config
        self.store = store
        self.loader = loader
        self.ledger = ledger
        self.paths = paths

    async def read_queue(self) -> list[str] | None:
        """Explicit queue order from ``QUEUE.json``.

        Accepts a bare list or an object with ``work_ids`` or ``queue``.
        """
        try:
            text = await read_text_if_exists(self.paths.queue)
            if not text:
                return None
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError):
            log.warning("queue_file_unparsable", path=str(self.paths.queue))
            return None
        if isinstance(data, dict):
            data = data.get("work_ids", data.get("queue"))
        if not isinstance(data, list):
            return None
        return [str(w).strip() for w in data if str(w).strip()]

    async def ensure_meta(
        self,
        work_id: str,
        routing: RoutingRecord | None,
        item: WorkItem | None,
        dry_run: bool = False,
    ) -> WorkMeta:
        """Create or backfill ``META.json`` without overwriting user-defined values."""
        existing = await self.store.get_meta(work_id)
        changed = False
        if existing is not None and existing.get("version") == 1:
            meta: dict[str, Any] = dict(existing)
            if not str(meta.get("created_at") or "").strip():
                meta["created_at"] = created_at_for(work_id, routing, item)
                changed = True
            try:
                int(meta.get("priority"))  # type: ignore[arg-type]
            except (TypeError, ValueError):
                meta["priority"] = DEFAULT_PRIORITY
                changed = True
            for key in _META_LIST_KEYS:
                if not isinstance(meta.get(key), list):
                    meta[key] = []
                    changed = True
            if "target_branch" not in meta:
                meta["target_branch"] = None
                changed = True
        else:
            meta = WorkMeta(work_id=work_id, created_at=created_at_for(work_id, routing, item)).to_dict()
            changed = True

        if routing is not None:
            if routing.routing_mode == "repo_explicit" and not meta["repo_scopes"] and routing.selected_repos:
                meta["repo_scopes"] = list(routing.selected_repos)
                changed = True
            target = routing.target_branch
            if (
                not meta.get("target_branch")
                and target is not None
                and (target.source or "").strip() == "explicit"
                and (target.name or "").strip()
            ):
                meta["target_branch"] = target.name.strip()  # type: ignore[union-attr]
                changed = True

        if changed and not dry_run:
            await self.store.put_meta(work_id, meta)
            log.debug("meta_written", work_id=work_id)
        return WorkMeta.from_dict(meta, work_id)

    async def _touched_repos(self, work_id: str, routing: RoutingRecord | None, meta: WorkMeta | None) -> list[str]:
        if routing is not None and routing.selected_repos:
            return list(routing.selected_repos)
        if meta is not None and meta.repo_scopes:
            return list(meta.repo_scopes)
        bundle = await self.loader.bundle(work_id)
        if isinstance(bundle, Found):
            return bundle.value.repo_ids
        return []

    def _stop_filter(self, stage: Stage, options: RunOptions) -> bool:
        """True when the item must be skipped as already at the stop stage."""
        if stage < options.stop_at:
            return False
        return not (options.ci_enabled and stage.is_ci_eligible)

    async def compute_schedule(
        self,
        options: RunOptions,
        order_by: str | None = None,
        allowlist: list[str] | None = None,
    ) -> Schedule:
        """Select the ordered batch of work items for a run.

        Args:
            options: Run options (limit, stop stage, CI dispatch, dry-run)
            order_by: ``queue``, ``created_at`` or ``priority``; defaults to
                ``queue`` when an allowlist applies, else ``created_at``
            allowlist: Restrict candidates to these ids; defaults to the
                run's ``work_id`` or the queue file

        Raises:
            ScheduleError: If ``order_by`` is unknown
        """
        if allowlist is None:
            if options.work_id:
                allowlist = [options.work_id]
            else:
                allowlist = await self.read_queue() or None
        if order_by is None:
            order_by = ORDER_QUEUE if allowlist else ORDER_CREATED_AT
        if order_by not in (ORDER_QUEUE, ORDER_CREATED_AT, ORDER_PRIORITY):
            raise ScheduleError(f"Unknown schedule order: {order_by}")

        max_items = self.config.max_items_per_run
        if options.limit:
            max_items = min(max_items, options.limit)

        all_ids = await self.store.list_ids()
        skipped: list[ScheduleSkip] = []
        if allowlist:
            known = set(all_ids)
            candidate_ids = [w for w in dict.fromkeys(allowlist) if w in known]
            skipped += [ScheduleSkip(w, "missing_work_dir") for w in dict.fromkeys(allowlist) if w not in known]
        else:
            candidate_ids = list(all_ids)

        items: dict[str, WorkItem] = {}
        for work_id in all_ids:
            try:
                item = await self.store.get(work_id)
            except UnknownStageError as e:
                if work_id in candidate_ids:
                    skipped.append(ScheduleSkip(work_id, f"invalid_stage:{e.raw}"))
                continue
            except ArtifactInvalidError:
                if work_id in candidate_ids:
                    skipped.append(ScheduleSkip(work_id, "invalid_status"))
                continue
            items[work_id] = item or WorkItem(work_id=work_id)

        routings: dict[str, RoutingRecord | None] = {}
        metas: dict[str, WorkMeta] = {}
        for work_id in items:
            routing = await self.loader.routing(work_id)
            routings[work_id] = routing.value if isinstance(routing, Found) else None
            if work_id in candidate_ids:
                snapshot = items[work_id] if items[work_id].last_updated else None
                metas[work_id] = await self.ensure_meta(work_id, routings[work_id], snapshot, options.dry_run)

        active_by_repo: dict[str, set[str]] = {}
        for work_id, item in items.items():
            active = item.current_stage in (Stage.APPLYING, Stage.APPLIED) or self._has_worktrees(work_id)
            if not active:
                continue
            meta = metas.get(work_id) or await self._read_meta(work_id)
            for repo in await self._touched_repos(work_id, routings.get(work_id), meta):
                active_by_repo.setdefault(repo, set()).add(work_id)

        candidates: list[tuple[str, WorkMeta, list[str]]] = []
        for work_id in candidate_ids:
            if work_id not in items:
                continue
            item = items[work_id]
            meta = metas[work_id]
            stage = item.current_stage

            if item.blocked:
                skipped.append(ScheduleSkip(work_id, f"blocked:{item.blocking_reason or 'unknown'}"))
                continue
            if stage.is_terminal:
                skipped.append(ScheduleSkip(work_id, f"terminal:{stage.value}"))
                continue
            unmet = [d for d in meta.depends_on if d not in items or items[d].current_stage is not Stage.DONE]
            if unmet:
                skipped.append(ScheduleSkip(work_id, f"dependencies:{','.join(unmet)}"))
                continue
            if self._stop_filter(stage, options):
                skipped.append(ScheduleSkip(work_id, f"already_at:{stage.value}"))
                continue

            repos = await self._touched_repos(work_id, routings.get(work_id), meta)
            conflicts = [
                r for r in repos if len(active_by_repo.get(r, set()) - {work_id}) >= self.config.max_active_per_repo
            ]
            if conflicts:
                skipped.append(ScheduleSkip(work_id, f"repo_concurrency:{','.join(conflicts)}", repos))
                continue
            candidates.append((work_id, meta, repos))

        queue_index = {w: i for i, w in enumerate(allowlist or [])}

        def sort_key(candidate: tuple[str, WorkMeta, list[str]]) -> tuple[Any, ...]:
            work_id, meta, _ = candidate
            if order_by == ORDER_QUEUE:
                return (queue_index.get(work_id, len(queue_index)), meta.created_at, work_id)
            if order_by == ORDER_PRIORITY:
                return (-meta.priority, meta.created_at, work_id)
            return (meta.created_at, work_id)

        candidates.sort(key=sort_key)
        selected = [
            ScheduleEntry(
                work_id=work_id,
                reason="eligible",
                score={"priority": meta.priority, "created_at": meta.created_at},
                repos=repos,
            )
            for work_id, meta, repos in candidates[:max_items]
        ]

        schedule = Schedule(
            generated_at=utc_now_iso(),
            selected=selected,
            skipped=sorted(skipped, key=lambda s: s.work_id),
            path=self.paths.relative(self.paths.schedule),
        )

        if not options.dry_run:
            await write_json(self.paths.schedule, schedule.to_dict())
            await self.ledger.append(
                "schedule_computed",
                selected_count=len(schedule.selected),
                skipped_count=len(schedule.skipped),
                path=schedule.path,
            )
        log.info(
            "schedule_computed",
            selected=schedule.selected_ids,
            skipped=len(schedule.skipped),
            order_by=order_by,
            dry_run=options.dry_run,
        )
        return schedule

    def _has_worktrees(self, work_id: str) -> bool:
        worktrees = self.paths.worktrees(work_id)
        return worktrees.is_dir() and any(worktrees.iterdir())

    async def _read_meta(self, work_id: str) -> WorkMeta | None:
        raw = await self.store.get_meta(work_id)
        return WorkMeta.from_dict(raw, work_id) if raw is not None else None
