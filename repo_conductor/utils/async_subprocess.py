"""Async subprocess utilities.

Non-blocking subprocess execution for collaborator commands. Every collaborator
invocation is a suspension point of the run; the event loop stays free while
the command executes.

Example:
    >>> from repo_conductor.utils.async_subprocess import run_shell_command
    >>> stdout, stderr, code = await run_shell_command("make ci-status W-1", check=False)
"""

import asyncio
import subprocess
from pathlib import Path


async def _communicate(process: asyncio.subprocess.Process, timeout: float | None) -> tuple[str, str]:
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        raise
    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")
    return stdout, stderr


async def run_shell_command(
    command: str,
    *,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
) -> tuple[str, str, int]:
    """Run a shell command string asynchronously.

    The command goes through /bin/sh so pipes and redirects work. Values
    interpolated into ``command`` must be quoted by the caller.
    """
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await _communicate(process, timeout)

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode or 1, command, stdout, stderr)

    return stdout, stderr, process.returncode or 0
