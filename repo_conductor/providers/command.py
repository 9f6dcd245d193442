"""Collaborator that runs configured shell commands.

Each operation maps to a command template from the ``collaborators`` section
of the settings. Templates may reference ``{work_id}``, ``{teams}``,
``{limit}`` and ``{with_patch_plans}``; all values are shell-quoted before
substitution.

Example configuration::

    collaborators:
      propose: "scripts/propose --work {work_id} --teams {teams}"
      ci_update: "scripts/ci-status {work_id}"
"""

import json
import shlex
import subprocess

import structlog
from pydantic import ValidationError

from repo_conductor.config.settings import CollaboratorConfig
from repo_conductor.exceptions import CollaboratorError
from repo_conductor.models.artifacts import SSOTDriftRecord
from repo_conductor.models.domain import CollaboratorResult
from repo_conductor.providers.base import WorkCollaborator
from repo_conductor.utils.async_subprocess import run_shell_command
from repo_conductor.utils.retry import async_retry

log = structlog.get_logger(__name__)


class CommandCollaborator(WorkCollaborator):
    """Runs one shell command per collaborator operation."""

    def __init__(self, config: CollaboratorConfig, cwd: str | None = None) -> None:
        self.config = config
        self.cwd = cwd

    async def _run(self, operation: str, template: str | None, work_id: str, **values: object) -> CollaboratorResult:
        if not template:
            log.warning("collaborator_not_configured", operation=operation, work_id=work_id)
            return CollaboratorResult(ok=False, message=f"no command configured for {operation}")

        quoted = {k: shlex.quote(str(v)) for k, v in values.items()}
        command = template.format(work_id=shlex.quote(work_id), **quoted)
        log.info("collaborator_started", operation=operation, work_id=work_id)
        try:
            stdout, stderr, code = await run_shell_command(
                command, cwd=self.cwd, check=False, timeout=self.config.timeout_seconds
            )
        except TimeoutError:
            log.error("collaborator_timeout", operation=operation, work_id=work_id)
            return CollaboratorResult(ok=False, message=f"{operation} timed out after {self.config.timeout_seconds}s")

        if code != 0:
            message = (stderr or stdout).strip().splitlines()[-1:] or [f"exit code {code}"]
            log.warning("collaborator_failed", operation=operation, work_id=work_id, code=code)
            return CollaboratorResult(ok=False, message=message[0], data={"exit_code": code})

        log.info("collaborator_finished", operation=operation, work_id=work_id)
        return CollaboratorResult(ok=True, message=stdout.strip(), data={"exit_code": code})

    async def create_tasks(self, work_id: str) -> CollaboratorResult:
        return await self._run("create_tasks", self.config.create_tasks, work_id)

    async def propose(self, work_id: str, teams: list[str], with_patch_plans: bool = True) -> CollaboratorResult:
        return await self._run(
            "propose",
            self.config.propose,
            work_id,
            teams=",".join(teams),
            with_patch_plans="true" if with_patch_plans else "false",
        )

    async def qa(self, work_id: str, teams: list[str], limit: int | None = None) -> CollaboratorResult:
        return await self._run("qa", self.config.qa, work_id, teams=",".join(teams), limit=limit or "")

    async def apply(self, work_id: str) -> CollaboratorResult:
        return await self._run("apply", self.config.apply, work_id)

    async def ci_update(self, work_id: str) -> CollaboratorResult:
        """Refresh the CI snapshot, retrying failed commands with backoff."""

        @async_retry(
            max_attempts=self.config.ci_update_attempts,
            backoff_factor=self.config.ci_update_backoff,
            exceptions=(CollaboratorError,),
        )
        async def attempt() -> CollaboratorResult:
            result = await self._run("ci_update", self.config.ci_update, work_id)
            if not result.ok and self.config.ci_update:
                raise CollaboratorError(result.message, operation="ci_update", work_id=work_id)
            return result

        try:
            return await attempt()
        except CollaboratorError as e:
            return CollaboratorResult(ok=False, message=e.message)

    async def check_ssot_drift(self, work_id: str) -> SSOTDriftRecord | None:
        """Run the drift checker and parse its JSON output.

        Raises:
            CollaboratorError: If the checker fails or prints invalid output
        """
        if not self.config.ssot_drift:
            return None
        command = self.config.ssot_drift.format(work_id=shlex.quote(work_id))
        try:
            stdout, _, _ = await run_shell_command(command, cwd=self.cwd, timeout=self.config.timeout_seconds)
        except subprocess.CalledProcessError as e:
            raise CollaboratorError(f"exit code {e.returncode}", operation="ssot_drift", work_id=work_id) from e
        except TimeoutError as e:
            raise CollaboratorError("timed out", operation="ssot_drift", work_id=work_id) from e
        try:
            return SSOTDriftRecord.model_validate(json.loads(stdout))
        except (json.JSONDecodeError, ValidationError) as e:
            raise CollaboratorError(f"invalid drift output: {e}", operation="ssot_drift", work_id=work_id) from e
