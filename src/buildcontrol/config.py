"""Configuration management for buildcontrol.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides,
and resolves the configured deploy targets into immutable ``DeployTarget``
objects.

Configuration loading priority (highest to lowest):
1. Programmatic overrides (passed to BuildControlConfig constructor)
2. TOML configuration file
3. Environment variables (BUILDCONTROL_* prefix)
4. Default values defined in this module

Example TOML configuration:
    source_repo = "."

    [options]
    remote = "https://github.com/org/site.git"
    branch = "gh-pages"

    [targets.production]
    dir = "dist"
    token_env = "DEPLOY_TOKEN"
    login_env = "DEPLOY_USER"

Example environment variable override:
    BUILDCONTROL_LOGGING__LEVEL=DEBUG
    BUILDCONTROL_OPTIONS__PUSH=false

Credentials are never read from the TOML file directly: ``login_env`` and
``token_env`` name environment variables that hold them, or they can be set
as ``BUILDCONTROL_OPTIONS__LOGIN`` / ``BUILDCONTROL_OPTIONS__TOKEN``.
"""

from __future__ import annotations

import hashlib
import os
import re
from pathlib import Path
from typing import Any

import tomli
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from buildcontrol.pipeline.errors import InvalidConfigurationError
from buildcontrol.pipeline.models import Credentials, DeployTarget
from buildcontrol.redaction import authenticated_url, split_url_credentials

# Remote aliases are bare names such as "origin"; anything else is a URL or path
_REMOTE_ALIAS_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        colors: Use ANSI colors in console format
        file: Optional log file path (None for stdout only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDCONTROL_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="console")
    colors: bool = Field(default=False)
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class TargetOptions(BaseModel):
    """Deploy options, used both as shared defaults and per-target overrides.

    Every field is optional so that only explicitly set keys take part in
    the options/target merge.

    Attributes:
        dir: Built artifact directory to publish
        work_dir: Working copy directory (default: under work_root)
        remote: Remote URL, local path, or name of a source repository remote
        branch: Branch to commit on
        remote_branch: Branch name on the remote (default: branch)
        message: Commit message template
        commit: Create a commit after staging
        push: Push to the remote
        connect_commits: Require a clean source tree and extend remote history
        tag: Tag to create on the deployed commit and push
        force: Force-push the branch
        shallow_fetch: Fetch only the remote branch tip
        prune: Remove files that are no longer part of the build output
        git_config: Local git configuration for the working copy
        login: Username for an authenticated push
        token: Token or password for an authenticated push
        login_env: Environment variable holding the username
        token_env: Environment variable holding the token
        allow_unresolved_tokens: Keep unknown %placeholders% in the message
    """

    model_config = ConfigDict(extra="forbid")

    dir: Path | None = None
    work_dir: Path | None = None
    remote: str | None = None
    branch: str | None = None
    remote_branch: str | None = None
    message: str | None = None
    commit: bool | None = None
    push: bool | None = None
    connect_commits: bool | None = None
    tag: str | None = None
    force: bool | None = None
    shallow_fetch: bool | None = None
    prune: bool | None = None
    git_config: dict[str, str] | None = None
    login: SecretStr | None = None
    token: SecretStr | None = None
    login_env: str | None = None
    token_env: str | None = None
    allow_unresolved_tokens: bool | None = None

    def merged_with(self, override: TargetOptions) -> TargetOptions:
        """Return these options overlaid key by key with ``override``.

        ``git_config`` tables are merged rather than replaced.
        """
        merged = self.model_dump(exclude_unset=True)
        overlay = override.model_dump(exclude_unset=True)
        if "git_config" in merged and "git_config" in overlay:
            overlay["git_config"] = {**merged["git_config"], **overlay["git_config"]}
        merged.update(overlay)
        return TargetOptions(**merged)


class BuildControlConfig(BaseSettings):
    """Root configuration for buildcontrol.

    Configuration can be loaded from:
    1. TOML files (using load_config function)
    2. Environment variables (BUILDCONTROL_* prefix)
    3. Direct instantiation with keyword arguments

    Environment variable format for nested config:
        BUILDCONTROL_<SECTION>__<KEY>=value

    Attributes:
        source_repo: The pipeline's primary source tree
        work_root: Parent directory of default working copies
        logging: Logging settings
        options: Defaults shared by every target
        targets: Named targets in deploy order
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDCONTROL_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    source_repo: Path = Field(default_factory=Path.cwd)
    work_root: Path = Field(default=Path("~/.cache/buildcontrol"), validate_default=True)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    options: TargetOptions = Field(default_factory=TargetOptions)
    targets: dict[str, TargetOptions] = Field(default_factory=dict)

    @field_validator("source_repo", "work_root")
    @classmethod
    def expand_user(cls, v: Path) -> Path:
        """Expand ``~`` in directory settings."""
        return v.expanduser()


def load_config(config_path: Path | None = None) -> BuildControlConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./buildcontrol.toml (current directory)
    3. ~/.config/buildcontrol/config.toml (user config directory)

    A relative ``source_repo`` in the file is resolved against the file's
    directory.

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        BuildControlConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path = config_path
    else:
        search_paths = [
            Path.cwd() / "buildcontrol.toml",
            Path.home() / ".config" / "buildcontrol" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            try:
                toml_data = tomli.load(f)
            except tomli.TOMLDecodeError as e:
                raise ValueError(f"Invalid configuration in {selected_path}: {e}") from e

        source_repo = toml_data.get("source_repo")
        if isinstance(source_repo, str) and not Path(source_repo).expanduser().is_absolute():
            toml_data["source_repo"] = str(selected_path.parent.resolve() / source_repo)

    try:
        return BuildControlConfig(**toml_data)
    except ValidationError as e:
        if selected_path:
            raise ValueError(
                f"Invalid configuration in {selected_path}: {e}"
            ) from e
        raise ValueError(f"Invalid configuration: {e}") from e


def _resolve_secret(
    value: SecretStr | None, env_name: str | None, field: str, target: str
) -> str | None:
    if env_name is not None:
        env_value = os.environ.get(env_name)
        if not env_value:
            raise InvalidConfigurationError(
                f"Target '{target}': environment variable {env_name} for {field} is not set"
            )
        return env_value
    if value is not None:
        return value.get_secret_value()
    return None


def _resolve_path(path: Path, base: Path) -> Path:
    path = path.expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def default_work_dir(work_root: Path, source_repo: Path, target_name: str) -> Path:
    """Working copy location used when a target sets no ``work_dir``.

    The directory is keyed by target name and source repository so two
    projects never share a working copy by accident.
    """
    digest = hashlib.sha1(str(source_repo.resolve()).encode("utf-8")).hexdigest()[:8]
    return work_root.expanduser().resolve() / f"{target_name}-{digest}"


def resolve_target(
    name: str,
    options: TargetOptions,
    source_repo: Path,
    work_root: Path,
    remote_aliases: dict[str, str] | None = None,
) -> DeployTarget:
    """Turn merged options into an immutable DeployTarget.

    Args:
        name: Target name
        options: Shared options already merged with the target's overrides
        source_repo: The pipeline's primary source tree
        work_root: Parent directory of default working copies
        remote_aliases: Remote names of the source repository mapped to URLs

    Returns:
        Resolved DeployTarget

    Raises:
        InvalidConfigurationError: If required fields are missing or invalid
    """
    missing = [key for key in ("dir", "remote", "branch") if getattr(options, key) is None]
    if missing:
        raise InvalidConfigurationError(
            f"Target '{name}' is missing required option(s): {', '.join(missing)}"
        )

    source_repo = source_repo.expanduser().resolve()
    remote = str(options.remote)
    source_dir = Path(str(options.dir))

    if remote_aliases and remote in remote_aliases and _REMOTE_ALIAS_RE.match(remote):
        remote = remote_aliases[remote]

    remote_url, url_login, url_token = split_url_credentials(remote)
    if "://" not in remote_url and not Path(remote_url).is_absolute() and ":" not in remote_url:
        # Local path remotes are relative to the source repository
        remote_url = str(_resolve_path(Path(remote_url), source_repo))

    login = _resolve_secret(options.login, options.login_env, "login", name) or url_login
    token = _resolve_secret(options.token, options.token_env, "token", name) or url_token

    credentials = None
    if login or token:
        if not (login and token):
            raise InvalidConfigurationError(
                f"Target '{name}': both login and token are required for authenticated pushes"
            )
        try:
            authenticated_url(remote_url, login, token)
        except ValueError as e:
            raise InvalidConfigurationError(
                f"Target '{name}': credentials require a scheme://host remote URL"
            ) from e
        credentials = Credentials(username=SecretStr(login), token=SecretStr(token))

    if options.work_dir is not None:
        work_dir = _resolve_path(options.work_dir, source_repo)
    else:
        work_dir = default_work_dir(work_root, source_repo, name)

    fields: dict[str, Any] = {
        "name": name,
        "source_dir": _resolve_path(source_dir, source_repo),
        "work_dir": work_dir,
        "remote_url": remote_url,
        "branch": options.branch,
        "credentials": credentials,
    }
    for key in (
        "remote_branch",
        "message",
        "commit",
        "push",
        "connect_commits",
        "tag",
        "force",
        "shallow_fetch",
        "prune",
        "git_config",
        "allow_unresolved_tokens",
    ):
        value = getattr(options, key)
        if value is not None:
            fields[key] = value

    return DeployTarget(**fields)


def resolve_targets(
    config: BuildControlConfig,
    names: list[str] | None = None,
    remote_aliases: dict[str, str] | None = None,
    overrides: TargetOptions | None = None,
) -> list[DeployTarget]:
    """Resolve the configured targets in deploy order.

    Args:
        config: Loaded configuration
        names: Subset of target names to resolve (None for all)
        remote_aliases: Remote names of the source repository mapped to URLs
        overrides: Options applied on top of every target (e.g. from the CLI)

    Returns:
        List of DeployTarget in configuration order

    Raises:
        InvalidConfigurationError: If a name is unknown or a target is invalid
    """
    if not config.targets:
        raise InvalidConfigurationError("No deploy targets configured")

    if names:
        unknown = [n for n in names if n not in config.targets]
        if unknown:
            raise InvalidConfigurationError(
                f"Unknown target(s): {', '.join(unknown)}. "
                f"Configured: {', '.join(config.targets)}"
            )

    targets = []
    for name, target_options in config.targets.items():
        if names and name not in names:
            continue
        merged = config.options.merged_with(target_options)
        if overrides is not None:
            merged = merged.merged_with(overrides)
        targets.append(
            resolve_target(
                name,
                merged,
                source_repo=config.source_repo,
                work_root=config.work_root,
                remote_aliases=remote_aliases,
            )
        )
    return targets
