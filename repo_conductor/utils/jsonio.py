"""File and JSON helpers shared by the engine.

All writes go through a temporary file followed by a rename so that a crash
mid-write never leaves a truncated status file or approval record behind.
Reads return ``None`` for missing files instead of raising; callers decide
whether absence is an error.
"""

import hashlib
import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def stable_json(data: Any, indent: int | None = None) -> str:
    """Serialize with sorted keys so equal content always yields equal text."""
    return json.dumps(data, sort_keys=True, indent=indent, ensure_ascii=False)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


async def read_text_if_exists(path: Path) -> str | None:
    try:
        async with aiofiles.open(path, encoding="utf-8") as f:
            return await f.read()
    except (FileNotFoundError, NotADirectoryError):
        return None


async def write_text_atomic(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` atomically (temp file + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp.{os.getpid()}")
    async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
        await f.write(text)
    tmp_path.replace(path)


async def write_json(path: Path, data: Any) -> None:
    await write_text_atomic(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


async def append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "a", encoding="utf-8") as f:
        await f.write(line.rstrip("\n") + "\n")
