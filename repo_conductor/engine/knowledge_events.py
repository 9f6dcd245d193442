"""Writer for the external knowledge change event log.

Events are appended as JSON lines to hourly UTC segments
(``segments/events-YYYYMMDD-HH.jsonl``) next to an ``index.json`` that tracks
the active segment and per-segment counters. Event ids are stable: the same
change (type, repo, commit, artifact paths) always produces the same
``KEVT_<sha16>`` id, so downstream consumers can de-duplicate.
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from repo_conductor.models.artifacts import KnowledgeChangeEvent, KnowledgeEventArtifacts
from repo_conductor.utils.jsonio import append_line, read_text_if_exists, sha256_hex, utc_now_iso, write_json

log = structlog.get_logger(__name__)


def stable_event_id(event_type: str, repo_id: str | None, commit: str, paths: list[str]) -> str:
    base = "\n".join([event_type, repo_id or "", commit, *sorted(paths)])
    return f"KEVT_{sha256_hex(base)[:16]}"


def segment_name(now: datetime) -> str:
    return f"events-{now.astimezone(UTC).strftime('%Y%m%d-%H')}.jsonl"


def _normalize_index(data: Any) -> dict[str, Any]:
    raw = data if isinstance(data, dict) else {}
    segments = []
    for seg in raw.get("segments") or []:
        if not isinstance(seg, dict) or not isinstance(seg.get("file"), str):
            continue
        segments.append(
            {
                "file": seg["file"],
                "created_at": seg.get("created_at"),
                "latest_event_at": seg.get("latest_event_at"),
                "events": seg.get("events") if isinstance(seg.get("events"), int) else 0,
            }
        )
    return {
        "version": 1,
        "updated_at": raw.get("updated_at"),
        "active_segment": raw.get("active_segment"),
        "events_total": raw.get("events_total") if isinstance(raw.get("events_total"), int) else 0,
        "latest_event_at": raw.get("latest_event_at"),
        "segments": sorted(segments, key=lambda s: s["file"]),
    }


class KnowledgeEventLog:
    """Appends change events to the segmented knowledge event log."""

    def __init__(self, events_dir: Path) -> None:
        self.events_dir = events_dir

    @property
    def index_path(self) -> Path:
        return self.events_dir / "index.json"

    @property
    def segments_dir(self) -> Path:
        return self.events_dir / "segments"

    async def read_index(self) -> dict[str, Any]:
        text = await read_text_if_exists(self.index_path)
        if text is None:
            return _normalize_index(None)
        try:
            return _normalize_index(json.loads(text))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid knowledge events index {self.index_path}: {e}") from e

    async def append(self, event: KnowledgeChangeEvent, now: datetime | None = None) -> Path:
        """Append ``event`` to the active hourly segment and update the index.

        Returns:
            Path of the segment the event was written to

        Raises:
            ValueError: If the event id does not match its content or the
                index is unreadable
        """
        expected = stable_event_id(event.type, event.repo_id, event.commit, event.artifacts.paths)
        if event.event_id != expected:
            raise ValueError(f"event_id mismatch (expected {expected}, got {event.event_id})")

        moment = now or datetime.now(UTC)
        index = await self.read_index()
        active = segment_name(moment)
        if not any(s["file"] == active for s in index["segments"]):
            index["segments"].append({"file": active, "created_at": utc_now_iso(), "latest_event_at": None, "events": 0})
            index["segments"].sort(key=lambda s: s["file"])

        segment = self.segments_dir / active
        await append_line(segment, json.dumps(event.model_dump(mode="json"), sort_keys=True))

        index["active_segment"] = active
        index["events_total"] += 1
        index["latest_event_at"] = event.timestamp
        for seg in index["segments"]:
            if seg["file"] == active:
                seg["events"] += 1
                seg["latest_event_at"] = event.timestamp
        index["updated_at"] = utc_now_iso()
        await write_json(self.index_path, index)

        log.info("knowledge_event_appended", event_id=event.event_id, type=event.type, segment=active)
        return segment


def build_event(
    event_type: str,
    *,
    work_id: str,
    commit: str,
    scope: str,
    repo_id: str | None = None,
    pr_number: int | None = None,
    paths: list[str] | None = None,
    fingerprints: list[str] | None = None,
    summary: str = "",
) -> KnowledgeChangeEvent:
    artifacts = KnowledgeEventArtifacts(paths=paths or [], fingerprints=fingerprints or [])
    return KnowledgeChangeEvent(
        event_id=stable_event_id(event_type, repo_id, commit, artifacts.paths),
        type=event_type,
        scope=scope,
        repo_id=repo_id,
        work_id=work_id,
        pr_number=pr_number,
        commit=commit,
        artifacts=artifacts,
        summary=summary,
        timestamp=utc_now_iso(),
    )
