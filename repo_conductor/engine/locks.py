"""
File lock manager with stale-lock recovery.

Locks are plain files created with exclusive-create semantics, so at most one
process can hold a given path at a time. The file body records who holds the
lock (pid, hostname, start time and caller metadata) for operators.

Crash Recovery:
    A lock whose file is older than ``stale_ms`` is presumed abandoned by a
    crashed holder. It is removed and re-created by the next acquirer, and
    the takeover is written to the ledger as ``work_lock_stale_replaced``.
    Staleness is judged by file age only; the holder may live on another
    host, so process liveness is not consulted.

Example:
    >>> locks = LockManager(ledger, stale_ms=30 * 60 * 1000)
    >>> async with locks.hold(paths.work_lock("W-1"), {"work_id": "W-1"}):
    ...     ...  # exclusive access to the work item directory
"""

import json
import os
import socket
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
import structlog

from repo_conductor.engine.ledger import Ledger
from repo_conductor.exceptions import LockError
from repo_conductor.models.domain import LockResult
from repo_conductor.utils.jsonio import read_text_if_exists, utc_now_iso

log = structlog.get_logger(__name__)

ACQUIRE_ATTEMPTS = 2


class LockManager:
    """Acquires and releases exclusive lock files.

    Args:
        ledger: Ledger that receives stale-reclaim events
        stale_ms: Default age in milliseconds after which a lock is stale
        clock: Returns the current time in seconds since the epoch
    """

    def __init__(
        self,
        ledger: Ledger,
        stale_ms: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.stale_ms = stale_ms
        self._clock = clock

    async def acquire(
        self,
        path: Path,
        stale_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LockResult:
        """Try to take the lock at ``path``.

        Returns a failed result with reason ``locked`` when a fresh lock is
        held elsewhere, or ``stale_replace_failed`` when a stale lock could not
        be removed. Never blocks waiting for the holder.
        """
        ttl_ms = self.stale_ms if stale_ms is None else stale_ms
        holder: dict[str, Any] = {
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "started_at": utc_now_iso(),
        }
        if metadata:
            holder["metadata"] = metadata

        path.parent.mkdir(parents=True, exist_ok=True)
        stale_replaced = False

        for _ in range(ACQUIRE_ATTEMPTS):
            try:
                async with aiofiles.open(path, "x", encoding="utf-8") as f:
                    await f.write(json.dumps(holder, indent=2) + "\n")
                log.debug("lock_acquired", path=str(path), stale_replaced=stale_replaced)
                return LockResult(ok=True, path=str(path), stale_replaced=stale_replaced)
            except FileExistsError:
                pass

            # Staleness is judged by file age alone, so two reclaimers can both see
            # the same stale lock; keep the stat and the remove adjacent.
            previous = await self.read_holder(path)
            try:
                info = await aiofiles.os.stat(path)
            except FileNotFoundError:
                continue

            age_ms = (self._clock() - info.st_mtime) * 1000
            if age_ms <= ttl_ms:
                log.info("lock_held", path=str(path), age_ms=int(age_ms))
                return LockResult(ok=False, path=str(path), reason="locked")

            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                log.warning("lock_stale_replace_failed", path=str(path), error=str(e))
                return LockResult(ok=False, path=str(path), stale_replaced=stale_replaced, reason="stale_replace_failed")

            stale_replaced = True
            log.warning("lock_stale_replaced", path=str(path), age_ms=int(age_ms))
            await self.ledger.append(
                "work_lock_stale_replaced",
                work_id=(metadata or {}).get("work_id"),
                path=str(path),
                scope=(metadata or {}).get("scope"),
                age_ms=int(age_ms),
                previous_holder=previous,
            )

        return LockResult(ok=False, path=str(path), stale_replaced=stale_replaced, reason="locked")

    async def release(self, path: Path) -> None:
        """Release the lock at ``path``. A missing lock is not an error."""
        try:
            await aiofiles.os.remove(path)
            log.debug("lock_released", path=str(path))
        except (FileNotFoundError, NotADirectoryError):
            pass

    async def read_holder(self, path: Path) -> dict[str, Any] | None:
        try:
            text = await read_text_if_exists(path)
            if not text:
                return None
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return data if isinstance(data, dict) else None

    @asynccontextmanager
    async def hold(
        self,
        path: Path,
        metadata: dict[str, Any] | None = None,
        stale_ms: int | None = None,
    ) -> AsyncIterator[LockResult]:
        """Hold the lock for the duration of the block.

        Raises:
            LockError: If the lock could not be acquired
        """
        result = await self.acquire(path, stale_ms=stale_ms, metadata=metadata)
        if not result.ok:
            raise LockError(f"Could not acquire lock {path}", reason=result.reason or "locked", path=path)
        try:
            yield result
        finally:
            await self.release(path)
