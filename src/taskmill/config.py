"""Layered mill configuration: defaults < user < repo < environment."""

from __future__ import annotations

import os
import shlex
import shutil
from pathlib import Path
from typing import Any, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

USER_CONFIG_DIR = ".taskmill"
USER_CONFIG_FILE = "config.yaml"
REPO_CONFIG_FILE = ".taskmill.yaml"
ENV_PREFIX = "TASKMILL_"
ENV_NESTED_DELIMITER = "__"

PlanningMode = Literal["skip", "interactive"]
SelectionMode = Literal["auto", "manual"]


class ScoringWeights(BaseModel):
    """Additive weights used by the candidate scorer.

    Attributes:
        floor: Constant added to every score.
        tier_step: Bonus per tier step; a tier ``t > 0`` earns ``(tier_span - t) * tier_step``.
        tier_span: Tier ceiling used to invert the tracker's "1 = urgent" ordering.
        fully_specified: Flat bonus when the description already is a task packet.
        foundational: Flat bonus for foundational/architecture work.
        per_blocked_task: Bonus per task this candidate blocks.
        unblocked: Flat bonus when nothing blocks the candidate.
        per_blocker: Penalty per task blocking the candidate.
        per_estimate_point: Penalty per estimate point.
        default_estimate: Estimate assumed when the tracker has none.
    """

    model_config = ConfigDict(extra="forbid")

    floor: float = 20.0
    tier_step: float = 20.0
    tier_span: int = 5
    fully_specified: float = 30.0
    foundational: float = 25.0
    per_blocked_task: float = 10.0
    unblocked: float = 15.0
    per_blocker: float = 20.0
    per_estimate_point: float = 2.0
    default_estimate: float = 3.0


class ReservationSettings(BaseModel):
    """Where reservation numbers are scanned from and whether they are issued."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    directory: str = "alembic/versions"
    pattern: str = "*.py"


class MillConfig(BaseModel):
    """Fully validated configuration for one mill run."""

    model_config = ConfigDict(extra="forbid")

    project: str = ""
    session: str = "taskmill"
    max_parallel: int = 3
    poll_seconds: float = 10.0
    base_branch: str = "main"
    remote: str = "origin"
    worktree_root: str = "../worktrees"
    agent_command: str = "claude"
    require_confirm: bool = True
    max_retries: int = 3
    retry_delay: float = 2.0
    planning_mode: PlanningMode = "skip"
    selection_mode: SelectionMode = "auto"
    dry_run: bool = False
    wait_when_empty: bool = False
    allow_missing_checks: bool = True
    auto_eval: bool = False
    backlog_cache_ttl: float = 60.0
    show_limit: int = 9
    log_level: str = "INFO"
    reservations: ReservationSettings = Field(default_factory=ReservationSettings)
    scoring: ScoringWeights = Field(default_factory=ScoringWeights)

    @field_validator("max_parallel", "max_retries", "show_limit")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("poll_seconds")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be > 0")
        return value

    @field_validator("retry_delay", "backlog_cache_ttl")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = str(value).strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError("log_level must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG")
        return normalized

    @field_validator("base_branch", "session", "agent_command")
    @classmethod
    def _required_text(cls, value: str) -> str:
        text = str(value).strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    def resolve_worktree_root(self, repo_dir: Path) -> Path:
        """Resolve ``worktree_root`` against the repository when it is relative."""
        raw = Path(self.worktree_root).expanduser()
        if raw.is_absolute():
            return raw
        return (repo_dir / raw).resolve()

    @property
    def base_ref(self) -> str:
        """Ref that new workspaces branch from."""
        return f"{self.remote}/{self.base_branch}" if self.remote else self.base_branch


def _deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_layer(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return raw


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    """Translate ``TASKMILL_*`` variables into a nested override mapping.

    ``TASKMILL_MAX_PARALLEL=2`` sets ``max_parallel``;
    ``TASKMILL_RESERVATIONS__ENABLED=false`` sets ``reservations.enabled``.
    """
    out: dict[str, Any] = {}
    for name, value in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        path = [part.lower() for part in name[len(ENV_PREFIX):].split(ENV_NESTED_DELIMITER) if part]
        if not path or path[0] not in MillConfig.model_fields:
            continue
        node = out
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[path[-1]] = value
    return out


def load_config(
    repo_dir: Path,
    *,
    home: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> MillConfig:
    """Load and validate the layered configuration for ``repo_dir``.

    Args:
        repo_dir (Path): Repository the mill operates on.
        home (Optional[Path]): Home directory holding the user-level layer.
            Defaults to ``Path.home()``.
        environ (Optional[Mapping[str, str]]): Environment mapping. Defaults to
            ``os.environ``.

    Returns:
        MillConfig: Validated configuration.

    Raises:
        ConfigError: If a layer cannot be parsed or the merged result is invalid.
    """
    home_dir = home if home is not None else Path.home()
    env = os.environ if environ is None else environ

    layers: list[tuple[str, dict[str, Any]]] = [
        (str(home_dir / USER_CONFIG_DIR / USER_CONFIG_FILE), _read_layer(home_dir / USER_CONFIG_DIR / USER_CONFIG_FILE)),
        (str(repo_dir / REPO_CONFIG_FILE), _read_layer(repo_dir / REPO_CONFIG_FILE)),
        ("environment", _env_layer(env)),
    ]
    merged: dict[str, Any] = {}
    for _, layer in layers:
        merged = _deep_merge(merged, layer)

    try:
        return MillConfig.model_validate(merged)
    except ValidationError as exc:
        sources = ", ".join(name for name, layer in layers if layer) or "defaults"
        raise ConfigError(f"Invalid configuration (sources: {sources}):\n{exc}") from exc


def check_required_tools(config: MillConfig, *, tools: tuple[str, ...] = ("git", "gh"), agent: bool = True) -> None:
    """Fail fast when an external tool the mill shells out to is missing.

    Args:
        config (MillConfig): Supplies the agent command.
        tools (tuple[str, ...]): Executables that must be on ``PATH``.
        agent (bool): Also require the first word of ``agent_command``.

    Raises:
        ConfigError: If any required executable is not on ``PATH``.
    """
    required = list(tools)
    if agent:
        required.append(shlex.split(config.agent_command)[0])
    missing = [name for name in required if shutil.which(name) is None]
    if missing:
        raise ConfigError(f"Required tool(s) not found on PATH: {', '.join(missing)}")
