"""Typed configuration for the patch applier and its bot adapters."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .tools.patch import DEFAULT_COMMIT_MESSAGE, ApplyOptions

DEFAULT_CONFIG_NAME = "wingman.yaml"
REMOTE_ENV = "WINGMAN_REMOTE"


class ConfigError(ValueError):
    """Raised when the configuration file cannot be loaded or validated."""


class ConfigModel(BaseModel):
    """Base model rejecting unknown keys so typos surface early."""

    model_config = ConfigDict(extra="forbid")


class DetectionConfig(ConfigModel):
    """Rules deciding whether a comment should be processed at all."""

    bot_names: List[str] = Field(default_factory=lambda: ["wingman", "fly-ci"])
    body_markers: List[str] = Field(
        default_factory=lambda: ["fly-ci/wingman", "FlyCI Wingman", "Suggested Fix"]
    )
    match_diff_fence: bool = True


class ApplyConfig(ConfigModel):
    whitespace: Optional[str] = "fix"
    reject_mode: bool = True
    commit: bool = True
    push: bool = True
    remote: str = "origin"
    commit_message: str = DEFAULT_COMMIT_MESSAGE


class IdentityConfig(ConfigModel):
    """Commit identity configured on freshly cloned working trees."""

    name: str = "flyci-wingman-applier[bot]"
    email: str = "flyci-wingman-applier[bot]@users.noreply.github.com"


class NotifyConfig(ConfigModel):
    rerun_checks: bool = True


class GitHubConfig(ConfigModel):
    api_url: str = "https://api.github.com"
    timeout: float = 30.0


class WingmanConfig(ConfigModel):
    """Top-level configuration for a run."""

    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    apply: ApplyConfig = Field(default_factory=ApplyConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)

    def apply_options(self, *, branch: str | None = None) -> ApplyOptions:
        """Build :class:`ApplyOptions` for one run against ``branch``."""

        return ApplyOptions(
            whitespace=self.apply.whitespace,
            reject_mode=self.apply.reject_mode,
            commit=self.apply.commit,
            push=self.apply.push,
            remote=self.apply.remote,
            branch=branch,
            commit_message=self.apply.commit_message,
        )


def parse_config(data: Mapping[str, Any] | None, *, env: Mapping[str, str] | None = None) -> WingmanConfig:
    """Validate a raw mapping into :class:`WingmanConfig`."""

    try:
        config = WingmanConfig.model_validate(dict(data or {}))
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration: {error}") from error

    env_mapping = os.environ if env is None else env
    remote = env_mapping.get(REMOTE_ENV, "").strip()
    if remote:
        config.apply.remote = remote
    return config


def load_config(path: Path | str | None = None, *, env: Mapping[str, str] | None = None) -> WingmanConfig:
    """Load YAML configuration from ``path``; a missing file yields defaults."""

    config_path = Path(path) if path is not None else Path(DEFAULT_CONFIG_NAME)
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        return parse_config({}, env=env)
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error

    if not isinstance(data, Mapping):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return parse_config(data, env=env)


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "WingmanConfig",
    "load_config",
    "parse_config",
]
