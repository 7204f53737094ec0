"""Deploy pipeline for buildcontrol.

This package implements git command execution and repository probing,
working copy and branch materialization, staging and committing of build
output, pushing to remotes, and the orchestration of deploy targets.
"""

from __future__ import annotations

from buildcontrol.pipeline.branch import REMOTE_NAME, BranchMaterializer
from buildcontrol.pipeline.commit import (
    CommitComposer,
    message_tokens,
    render_message,
    sync_directory,
    validate_template,
)
from buildcontrol.pipeline.errors import (
    DeployError,
    InvalidConfigurationError,
    RemoteUnreachableError,
    SubprocessFailureError,
    WorkingCopyCorruptError,
)
from buildcontrol.pipeline.git_ops import (
    GitRunner,
    RepositoryProber,
    credential_env,
    target_env,
)
from buildcontrol.pipeline.models import (
    DEFAULT_MESSAGE,
    CommandResult,
    CommitResult,
    Credentials,
    DeployOutcome,
    DeployReport,
    DeployTarget,
    ErrorKind,
    PushResult,
    SourceInfo,
    WorkingCopyState,
)
from buildcontrol.pipeline.orchestrator import DeployOrchestrator
from buildcontrol.pipeline.publisher import RemotePublisher

__all__ = [
    # Models
    "DEFAULT_MESSAGE",
    "CommandResult",
    "CommitResult",
    "Credentials",
    "DeployOutcome",
    "DeployReport",
    "DeployTarget",
    "ErrorKind",
    "PushResult",
    "SourceInfo",
    "WorkingCopyState",
    # Errors
    "DeployError",
    "InvalidConfigurationError",
    "RemoteUnreachableError",
    "SubprocessFailureError",
    "WorkingCopyCorruptError",
    # Git execution
    "GitRunner",
    "RepositoryProber",
    "credential_env",
    "target_env",
    # Branch materialization
    "REMOTE_NAME",
    "BranchMaterializer",
    # Commit composition
    "CommitComposer",
    "message_tokens",
    "render_message",
    "sync_directory",
    "validate_template",
    # Publishing
    "RemotePublisher",
    # Orchestration
    "DeployOrchestrator",
]
