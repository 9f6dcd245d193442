"""Pytest configuration and shared fixtures."""

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import structlog

from repo_conductor.config.settings import ConductorSettings
from repo_conductor.engine.artifacts import ArtifactLoader
from repo_conductor.engine.ledger import Ledger
from repo_conductor.engine.paths import StatePaths
from repo_conductor.engine.status_writer import StatusWriter
from repo_conductor.engine.store import FileWorkItemStore
from repo_conductor.models.artifacts import SSOTDriftRecord
from repo_conductor.models.domain import CollaboratorResult, WorkItem
from repo_conductor.models.stages import Stage
from repo_conductor.providers.base import WorkCollaborator


def write_json_file(path: Path, data: Any) -> Path:
    """Write ``data`` as JSON, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    return path


GREEN_CI = {
    "overall": "success",
    "head_sha": "abc123",
    "captured_at": "2024-05-01T10:00:00.000Z",
    "checks": [
        {"name": "build", "status": "completed", "conclusion": "success"},
        {"name": "test", "status": "completed", "conclusion": "success"},
    ],
}

FAILED_CI = {
    "overall": "failure",
    "head_sha": "abc123",
    "checks": [
        {"name": "build", "status": "completed", "conclusion": "success"},
        {"name": "test", "status": "completed", "conclusion": "failure"},
    ],
}


class FakeCollaborator(WorkCollaborator):
    """Scripted collaborator recording every call.

    ``results`` maps an operation name to the result it returns (default ok).
    ``effects`` maps an operation name to a callable run with the work id
    before returning, typically writing the artifact the real collaborator
    would produce.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.results: dict[str, CollaboratorResult] = {}
        self.effects: dict[str, Callable[[str], None]] = {}
        self.drift: SSOTDriftRecord | None = None

    def _record(self, operation: str, work_id: str) -> CollaboratorResult:
        self.calls.append((operation, work_id))
        effect = self.effects.get(operation)
        if effect is not None:
            effect(work_id)
        return self.results.get(operation, CollaboratorResult(ok=True))

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    async def create_tasks(self, work_id: str) -> CollaboratorResult:
        return self._record("create_tasks", work_id)

    async def propose(self, work_id: str, teams: list[str], with_patch_plans: bool = True) -> CollaboratorResult:
        return self._record("propose", work_id)

    async def qa(self, work_id: str, teams: list[str], limit: int | None = None) -> CollaboratorResult:
        return self._record("qa", work_id)

    async def apply(self, work_id: str) -> CollaboratorResult:
        return self._record("apply", work_id)

    async def ci_update(self, work_id: str) -> CollaboratorResult:
        return self._record("ci_update", work_id)

    async def check_ssot_drift(self, work_id: str) -> SSOTDriftRecord | None:
        self.calls.append(("check_ssot_drift", work_id))
        return self.drift


@pytest.fixture(autouse=True)
def quiet_logging():
    """Only critical log lines, resolved per call so captured streams are never cached."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


@pytest.fixture
def state_root(tmp_path: Path) -> Path:
    """Temporary state root."""
    return tmp_path / "state"


@pytest.fixture
def settings(state_root: Path) -> ConductorSettings:
    """Settings rooted in the temporary state directory."""
    return ConductorSettings(state_root=state_root, events_dir=state_root / "events")


@pytest.fixture
def paths(state_root: Path) -> StatePaths:
    return StatePaths(state_root)


@pytest.fixture
def ledger(paths: StatePaths) -> Ledger:
    return Ledger(paths.ledger)


@pytest.fixture
def store(paths: StatePaths) -> FileWorkItemStore:
    return FileWorkItemStore(paths)


@pytest.fixture
def loader(paths: StatePaths) -> ArtifactLoader:
    return ArtifactLoader(paths)


@pytest.fixture
def status_writer(store: FileWorkItemStore, ledger: Ledger, paths: StatePaths) -> StatusWriter:
    return StatusWriter(store, ledger, paths)


@pytest.fixture
def collaborator() -> FakeCollaborator:
    return FakeCollaborator()


@pytest.fixture
def seed_item(store: FileWorkItemStore, paths: StatePaths) -> Callable[..., Any]:
    """Create a work item directory with a status snapshot and META.json."""

    async def _seed(
        work_id: str,
        stage: Stage = Stage.INTAKE_RECEIVED,
        blocked: bool = False,
        blocking_reason: str | None = None,
        created_at: str = "2024-01-01T00:00:00.000Z",
        **meta: Any,
    ) -> WorkItem:
        item = WorkItem(
            work_id=work_id,
            current_stage=stage,
            blocked=blocked,
            blocking_reason=blocking_reason,
            last_updated=created_at,
        )
        await store.put(item)
        write_json_file(
            paths.meta(work_id),
            {
                "version": 1,
                "work_id": work_id,
                "created_at": created_at,
                "priority": meta.pop("priority", 50),
                "depends_on": meta.pop("depends_on", []),
                "blocks": [],
                "labels": [],
                "repo_scopes": meta.pop("repo_scopes", []),
                "target_branch": None,
            },
        )
        return item

    return _seed


@pytest.fixture
def write_routing(paths: StatePaths) -> Callable[..., Path]:
    def _write(work_id: str, teams: list[str] | None = None, repos: list[str] | None = None, **extra: Any) -> Path:
        return write_json_file(
            paths.routing(work_id),
            {
                "selected_teams": teams if teams is not None else ["Backend"],
                "selected_repos": repos if repos is not None else ["svc-api"],
                "routing_mode": extra.pop("routing_mode", "team_routed"),
                "timestamp": extra.pop("timestamp", "2024-01-01T00:00:00.000Z"),
                **extra,
            },
        )

    return _write


@pytest.fixture
def write_bundle(paths: StatePaths) -> Callable[..., Path]:
    """Write a bundle with one patch plan (and proposal) per repository."""

    def _write(
        work_id: str,
        repos: list[str] | None = None,
        risk: str = "low",
        bundle_hash: str = "bundle-hash-1",
        team: str = "Backend",
        repo_kind: str = "service",
        with_proposals: bool = True,
    ) -> Path:
        entries = []
        for repo_id in repos or ["svc-api"]:
            plan_rel = f"patch-plans/{repo_id}.json"
            write_json_file(
                paths.work_dir(work_id) / plan_rel,
                {"repo_id": repo_id, "work_id": work_id, "risk": {"level": risk}, "edits": []},
            )
            entry = {
                "repo_id": repo_id,
                "team_id": team,
                "repo_kind": repo_kind,
                "patch_plan_json_path": plan_rel,
            }
            if with_proposals:
                proposal_rel = f"proposals/{repo_id}.json"
                write_json_file(
                    paths.work_dir(work_id) / proposal_rel,
                    {"agent_id": "agent-1", "ssot_references": [{"doc": "contracts/api.md"}]},
                )
                entry["proposal_path"] = proposal_rel
            entries.append(entry)
        return write_json_file(paths.bundle(work_id), {"bundle_hash": bundle_hash, "repos": entries})

    return _write
