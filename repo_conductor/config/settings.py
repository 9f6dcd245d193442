"""
Configuration system using Pydantic for type-safe settings management.

Settings are loaded once per process (from YAML, environment variables or
defaults) and are immutable afterwards. Per-run choices such as the stop stage
or the time budget are captured in a separate frozen ``RunOptions`` value that
is passed explicitly through the scheduler and the watchdog.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from repo_conductor.exceptions import ConfigurationError, UnknownStageError
from repo_conductor.models.stages import Stage

DEFAULT_STALE_MS = 30 * 60 * 1000


class LockConfig(BaseModel):
    """Lock manager configuration."""

    model_config = ConfigDict(frozen=True)

    stale_ms: int = Field(default=DEFAULT_STALE_MS, ge=1, description="Age in ms after which a lock is stale")


class SchedulerConfig(BaseModel):
    """Scheduler limits."""

    model_config = ConfigDict(frozen=True)

    max_items_per_run: int = Field(default=3, ge=1, description="Upper bound on items selected per run")
    max_active_per_repo: int = Field(default=1, ge=1, description="Concurrent active work items per repository")


class WatchdogConfig(BaseModel):
    """Default run behaviour of the stage state machine."""

    model_config = ConfigDict(frozen=True)

    stop_at: Stage = Field(default=Stage.APPLY_APPROVAL_PENDING, description="Pre-PR pipeline stop stage")
    max_minutes: float = Field(default=8, gt=0, description="Wall-clock budget per run")
    ci_enabled: bool = Field(default=True, description="Dispatch CI promotion for post-PR items")
    prepr_enabled: bool = Field(default=True, description="Drive the pre-PR pipeline")
    max_ci_promotions_per_run: int = Field(default=1, ge=1, description="CI promotions before the run stops")

    @field_validator("stop_at", mode="before")
    @classmethod
    def parse_stop_at(cls, v: object) -> Stage:
        return Stage.parse(v)  # type: ignore[arg-type]


class ApplyApprovalConfig(BaseModel):
    """Auto-approval policy for the apply approval gate."""

    model_config = ConfigDict(frozen=True)

    auto_approve: bool = Field(default=True, description="Allow auto-approval when no reason codes apply")
    team_allowlist: list[str] | None = Field(default=None, description="Teams eligible for auto-approval")
    repo_kind_allowlist: list[str] | None = Field(default=None, description="Repo kinds eligible for auto-approval")
    disallowed_risk_levels: list[str] = Field(default_factory=lambda: ["high"])


class CollaboratorConfig(BaseModel):
    """Shell commands backing the external collaborators.

    Each command is a template; ``{work_id}`` is replaced with the quoted work
    item id. A command left unset makes the corresponding call fail.
    """

    model_config = ConfigDict(frozen=True)

    create_tasks: str | None = None
    propose: str | None = None
    qa: str | None = None
    apply: str | None = None
    ci_update: str | None = None
    ssot_drift: str | None = None
    timeout_seconds: float = Field(default=600, gt=0)
    ci_update_attempts: int = Field(default=3, ge=1)
    ci_update_backoff: float = Field(default=2.0, ge=1.0)


class ConductorSettings(BaseSettings):
    """Main orchestration settings.

    Combines all configuration sections and provides YAML loading with
    environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="CONDUCTOR_",
        env_nested_delimiter="__",
        case_sensitive=False,
        frozen=True,
    )

    state_root: Path = Field(default=Path(".conductor"), description="Root of all on-disk state")
    events_dir: Path | None = Field(default=None, description="Knowledge change event log directory")
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True, description="JSON log lines; console rendering when false")
    locks: LockConfig = Field(default_factory=LockConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    apply_approval: ApplyApprovalConfig = Field(default_factory=ApplyApprovalConfig)
    collaborators: CollaboratorConfig = Field(default_factory=CollaboratorConfig)

    @property
    def knowledge_events_dir(self) -> Path:
        return self.events_dir if self.events_dir is not None else self.state_root / "knowledge" / "events"

    def run_options(self, **overrides: object) -> RunOptions:
        """Build run options from the watchdog defaults, applying non-None overrides."""
        values: dict[str, object] = {
            "limit": None,
            "work_id": None,
            "stop_at": self.watchdog.stop_at,
            "max_minutes": self.watchdog.max_minutes,
            "dry_run": False,
            "ci_enabled": self.watchdog.ci_enabled,
            "prepr_enabled": self.watchdog.prepr_enabled,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return RunOptions(**values)  # type: ignore[arg-type]

    @classmethod
    def from_yaml(cls, config_path: str) -> ConductorSettings:
        """Load settings from a YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content) or {}
            if not isinstance(config_dict, dict):
                raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        try:
            return cls(**config_dict)
        except UnknownStageError as e:
            raise ConfigurationError(f"Invalid stage in configuration: {e.message}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        YAML comment lines are left unchanged so documentation examples such
        as ${VAR_NAME} in comments do not need the variable to be set.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            stripped = line.lstrip()
            if stripped.startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))


class RunOptions(BaseModel):
    """Immutable per-run options, built once and passed down the call chain."""

    model_config = ConfigDict(frozen=True)

    limit: int | None = Field(default=None, ge=1)
    work_id: str | None = None
    stop_at: Stage = Stage.APPLY_APPROVAL_PENDING
    max_minutes: float = Field(default=8, gt=0)
    dry_run: bool = False
    ci_enabled: bool = True
    prepr_enabled: bool = True

    @field_validator("stop_at", mode="before")
    @classmethod
    def parse_stop_at(cls, v: object) -> Stage:
        return Stage.parse(v)  # type: ignore[arg-type]
