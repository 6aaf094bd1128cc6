"""Configuration loading for Grove.

Reads .grove/config.yaml into pydantic models. Every section has
defaults, so an empty file is a valid configuration. A handful of
environment variables override paths and the execution strategy for
deployments.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from grove.models import Phase

logger = logging.getLogger(__name__)


# ── Config Models ────────────────────────────────────────────────────────────


class PathsConfig(BaseModel):
    data_dir: str = ".grove-data"  # sessions, conversations, grove.db
    worktrees_dir: str | None = None  # default: <data_dir>/worktrees

    @property
    def sessions_dir(self) -> Path:
        return Path(self.data_dir) / "sessions"

    @property
    def conversations_dir(self) -> Path:
        return Path(self.data_dir) / "conversations"

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / "grove.db"

    @property
    def worktrees_path(self) -> Path:
        if self.worktrees_dir:
            return Path(self.worktrees_dir)
        return Path(self.data_dir) / "worktrees"


class CooldownConfig(BaseModel):
    mention_window: int = 30  # seconds, direct human mentions
    auto_window: int = 300  # seconds, system-chained dispatch
    prune_threshold: int = 500  # entries before pruning kicks in

    @field_validator("auto_window")
    @classmethod
    def _auto_not_shorter(cls, v: int, info) -> int:
        mention = info.data.get("mention_window", 0)
        if v < mention:
            raise ValueError("auto_window must be >= mention_window")
        return v


class TimeoutsConfig(BaseModel):
    research: int = 300
    planning: int = 300
    implementation: int = 600
    conversational: int = 300
    kill_grace: float = 5.0  # seconds between SIGTERM and SIGKILL

    def for_phase(self, phase: Phase, conversational: bool = False) -> int:
        if conversational:
            return self.conversational
        return {
            Phase.RESEARCH: self.research,
            Phase.PLANNING: self.planning,
            Phase.IMPLEMENTATION: self.implementation,
        }.get(phase, self.conversational)


class SchedulerConfig(BaseModel):
    interval: int = 900  # seconds between sweeps
    max_concurrent: int = 2  # in-flight dispatches per batch
    per_phase_limit: int = 2  # tickets selected per pass
    activity_quiet_period: int = 1800  # seconds before re-dispatching implementation
    research_version_cap: int = 3
    candidate_pool: int = 100  # tickets fetched per pass before round-robin


class SupervisorConfig(BaseModel):
    cli_binary: str = "claude"
    model: str = "sonnet"
    min_output_chars: int = 100
    output_cap_bytes: int = 1_000_000  # tail kept in memory; files hold the full stream


class ConversationConfig(BaseModel):
    api_base_url: str = "https://api.anthropic.com"
    api_key_env: str = "ANTHROPIC_API_KEY"
    api_version: str = "2023-06-01"
    model: str = "claude-sonnet-4-5"
    max_turns: int = 40
    max_tokens: int = 8192
    max_tool_output: int = 50_000  # chars per tool result
    context_warning_tokens: int = 180_000
    context_limit_tokens: int = 200_000
    request_timeout: float = 300.0

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class DocumentsConfig(BaseModel):
    regression_ratio: float = 0.30
    doc_truncate_chars: int = 3000
    recent_comments: int = 10
    summary_chars: int = 500


class RuntimeConfig(BaseModel):
    strategy: Literal["cli", "conversation"] = "cli"


class GroveConfig(BaseModel):
    """Top-level Grove configuration (matches .grove/config.yaml)."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    cooldown: CooldownConfig = Field(default_factory=CooldownConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    documents: DocumentsConfig = Field(default_factory=DocumentsConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)


def load_config(grove_dir: Path) -> GroveConfig:
    """Load Grove configuration from a .grove/ directory.

    Args:
        grove_dir: Path to the .grove/ directory.

    Returns:
        Validated GroveConfig.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ValueError: If config validation fails.
    """
    config_path = grove_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Grove config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = GroveConfig(**raw)

    # Environment variable overrides for deployment
    data_dir = os.environ.get("GROVE_DATA_DIR")
    if data_dir:
        config.paths.data_dir = data_dir

    worktrees_dir = os.environ.get("GROVE_WORKTREES_DIR")
    if worktrees_dir:
        config.paths.worktrees_dir = worktrees_dir

    cli_binary = os.environ.get("GROVE_CLI_BINARY")
    if cli_binary:
        config.supervisor.cli_binary = cli_binary

    strategy = os.environ.get("GROVE_STRATEGY")
    if strategy:
        config.runtime = RuntimeConfig(strategy=strategy)

    logger.info(
        "Loaded Grove config: strategy=%s data_dir=%s",
        config.runtime.strategy,
        config.paths.data_dir,
    )
    return config
