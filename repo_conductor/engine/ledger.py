"""Append-only ledger.

The ledger (``ledger.jsonl``) is the authoritative record of what the
orchestrator did and when: stage advances, failures, CI promotions, gate
decisions, stale lock reclaims and run start/finish. It is never rewritten;
the mutable status snapshots can always be reconciled against it.
"""

import json
from pathlib import Path
from typing import Any

import structlog

from repo_conductor.models.domain import LedgerEntry
from repo_conductor.utils.jsonio import append_line, read_text_if_exists, utc_now_iso

log = structlog.get_logger(__name__)


class Ledger:
    """Appends one JSON object per line to the ledger file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    async def append(
        self,
        action: str,
        work_id: str | None = None,
        from_stage: str | None = None,
        to_stage: str | None = None,
        **details: Any,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            timestamp=utc_now_iso(),
            action=action,
            work_id=work_id,
            from_stage=from_stage,
            to_stage=to_stage,
            details={k: v for k, v in details.items() if v is not None},
        )
        await append_line(self.path, json.dumps(entry.to_dict(), sort_keys=True, default=str))
        log.debug("ledger_appended", action=action, work_id=work_id)
        return entry

    async def read(self) -> list[LedgerEntry]:
        """Read every entry; unparsable lines are skipped."""
        text = await read_text_if_exists(self.path)
        if not text:
            return []
        entries = []
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                log.warning("ledger_line_unparsable", path=str(self.path))
                continue
            if isinstance(data, dict):
                entries.append(LedgerEntry.from_dict(data))
        return entries
