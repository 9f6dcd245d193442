"""
Work item repository.

The state machine reads and writes work items only through ``WorkItemStore``
so the backing store can be swapped without touching orchestration logic.
``FileWorkItemStore`` keeps the historical file contracts:

- ``STATUS.md``: human summary with the machine snapshot embedded as fenced
  JSON between ``STATUS_SNAPSHOT`` markers
- ``status.json`` / ``status-history.json``: compact stage checkpoint and the
  list of its previous values
- ``META.json``: intake metadata, stored as a raw mapping so user-defined keys
  survive rewrites
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Any

import structlog

from repo_conductor.engine.paths import StatePaths
from repo_conductor.exceptions import ArtifactInvalidError
from repo_conductor.models.domain import WorkItem
from repo_conductor.utils.jsonio import read_text_if_exists, stable_json, utc_now_iso, write_json, write_text_atomic

log = structlog.get_logger(__name__)

SNAPSHOT_BEGIN = "<!-- STATUS_SNAPSHOT_BEGIN -->"
SNAPSHOT_END = "<!-- STATUS_SNAPSHOT_END -->"

_SNAPSHOT_RE = re.compile(
    r"<!--\s*STATUS_SNAPSHOT_BEGIN\s*-->\s*```json\s*(.*?)\s*```\s*<!--\s*STATUS_SNAPSHOT_END\s*-->",
    re.DOTALL,
)


class WorkItemStore(ABC):
    """Repository interface over persisted work items."""

    @abstractmethod
    async def list_ids(self) -> list[str]:
        """All known work item ids, sorted."""
        pass

    @abstractmethod
    async def exists(self, work_id: str) -> bool:
        pass

    @abstractmethod
    async def get(self, work_id: str) -> WorkItem | None:
        """Load a work item's current state.

        Returns:
            The work item, or None when no snapshot has been written yet

        Raises:
            ArtifactInvalidError: If the snapshot cannot be parsed
            UnknownStageError: If the snapshot carries an unknown stage
        """
        pass

    @abstractmethod
    async def put(self, item: WorkItem) -> None:
        pass

    @abstractmethod
    async def get_meta(self, work_id: str) -> dict[str, Any] | None:
        pass

    @abstractmethod
    async def put_meta(self, work_id: str, meta: dict[str, Any]) -> None:
        pass


def parse_status_markdown(text: str) -> dict[str, Any] | None:
    match = _SNAPSHOT_RE.search(text)
    if not match:
        return None
    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _render_artifacts(artifacts: dict[str, str]) -> list[str]:
    if not artifacts:
        return ["- (none)"]
    return [f"- {key}: `{value}`" for key, value in sorted(artifacts.items())]


def _render_repos(repos: dict[str, Any]) -> list[str]:
    if not repos:
        return ["- (none)"]
    lines = []
    for repo_id, info in sorted(repos.items()):
        if not isinstance(info, dict):
            lines.append(f"- {repo_id}: (unrecognized)")
            continue
        fields = ", ".join(f"{k}={v}" for k, v in sorted(info.items()))
        lines.append(f"- {repo_id}: {fields or '(empty)'}")
    return lines


def render_status_markdown(item: WorkItem) -> str:
    snapshot = item.to_snapshot()
    history = sorted(item.history, key=lambda h: h.timestamp)
    lines = [
        "# STATUS",
        "",
        SNAPSHOT_BEGIN,
        "```json",
        stable_json(snapshot, indent=2),
        "```",
        SNAPSHOT_END,
        "",
        "## Current",
        "",
        f"- current_stage: `{item.current_stage.value}`",
        f"- last_updated: `{item.last_updated or '(missing)'}`",
        f"- blocked: `{'yes' if item.blocked else 'no'}`",
    ]
    if item.blocking_reason:
        lines.append(f"- blocking_reason: {item.blocking_reason}")
    lines += ["", "## Artifacts", "", *_render_artifacts(item.artifacts)]
    lines += ["", "## Repos", "", *_render_repos(item.repos)]
    lines += ["", "## Stage history", ""]
    if history:
        lines += [f"- {h.timestamp} - {h.stage.value}" + (f" - {h.note}" if h.note else "") for h in history]
    else:
        lines.append("- (none)")
    lines.append("")
    return "\n".join(lines)


class FileWorkItemStore(WorkItemStore):
    """Work items stored as directories under ``<state_root>/work``."""

    def __init__(self, paths: StatePaths) -> None:
        self.paths = paths

    async def list_ids(self) -> list[str]:
        if not self.paths.work_root.is_dir():
            return []
        return sorted(p.name for p in self.paths.work_root.iterdir() if p.is_dir() and not p.name.startswith("."))

    async def exists(self, work_id: str) -> bool:
        return self.paths.work_dir(work_id).is_dir()

    async def get(self, work_id: str) -> WorkItem | None:
        path = self.paths.status_md(work_id)
        try:
            text = await read_text_if_exists(path)
        except UnicodeDecodeError as e:
            raise ArtifactInvalidError(f"Status snapshot is not valid UTF-8: {e}", path=path) from e
        if text is None:
            return None
        data = parse_status_markdown(text)
        if data is None:
            raise ArtifactInvalidError("Unparsable status snapshot", path=path)
        return WorkItem.from_snapshot(data, work_id=work_id)

    async def put(self, item: WorkItem) -> None:
        await write_text_atomic(self.paths.status_md(item.work_id), render_status_markdown(item))
        await self._checkpoint_stage(item)

    async def _checkpoint_stage(self, item: WorkItem) -> None:
        """Rewrite ``status.json`` when the stage changed, archiving the old value."""
        status_path = self.paths.status_json(item.work_id)
        previous: Any = None
        try:
            text = await read_text_if_exists(status_path)
        except UnicodeDecodeError as e:
            text = None
            previous = {"parse_error": str(e)}
        if text is not None:
            try:
                previous = json.loads(text)
            except json.JSONDecodeError as e:
                previous = {"parse_error": str(e), "raw": text}

        previous_stage = previous.get("stage") if isinstance(previous, dict) else None
        if previous_stage == item.current_stage.value:
            return

        if previous is not None:
            history_path = self.paths.status_history(item.work_id)
            history: list[Any] = []
            try:
                history_text = await read_text_if_exists(history_path)
                if history_text:
                    loaded = json.loads(history_text)
                    history = loaded if isinstance(loaded, list) else []
            except (json.JSONDecodeError, UnicodeDecodeError):
                log.warning("status_history_unparsable", work_id=item.work_id)
            history.append(previous)
            await write_json(history_path, history)

        base = dict(previous) if isinstance(previous, dict) and "parse_error" not in previous else {}
        base.update({"work_id": item.work_id, "stage": item.current_stage.value, "updated_at": utc_now_iso()})
        await write_json(status_path, base)

    async def get_meta(self, work_id: str) -> dict[str, Any] | None:
        try:
            text = await read_text_if_exists(self.paths.meta(work_id))
            if text is None:
                return None
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError):
            log.warning("meta_unparsable", work_id=work_id)
            return None
        return data if isinstance(data, dict) else None

    async def put_meta(self, work_id: str, meta: dict[str, Any]) -> None:
        await write_json(self.paths.meta(work_id), meta)
