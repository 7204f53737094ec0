"""Data models shared by the deploy pipeline components.

``DeployTarget`` is resolved once per invocation from configuration and is
immutable afterwards. ``CommandResult``, ``CommitResult``, ``PushResult`` and
``DeployOutcome`` are produced once per operation and only read afterwards.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr

DEFAULT_MESSAGE = "Built %sourceName% from commit %sourceCommit% on branch %sourceBranch%"


class ErrorKind(str, Enum):
    """Classification of deploy failures and notable non-failures.

    Attributes:
        REMOTE_UNREACHABLE: Clone, fetch or push failed (network or auth)
        WORKING_COPY_CORRUPT: Existing working copy unusable and rebuild failed
        NOTHING_TO_COMMIT: Output identical to the branch tip (not a failure)
        INVALID_CONFIGURATION: Missing or inconsistent configuration
        SUBPROCESS_FAILURE: A git command that had to succeed exited nonzero
    """

    REMOTE_UNREACHABLE = "remote_unreachable"
    WORKING_COPY_CORRUPT = "working_copy_corrupt"
    NOTHING_TO_COMMIT = "nothing_to_commit"
    INVALID_CONFIGURATION = "invalid_configuration"
    SUBPROCESS_FAILURE = "subprocess_failure"


class WorkingCopyState(str, Enum):
    """Lifecycle of the working copy at a target's work directory."""

    ABSENT = "absent"
    INITIALIZED = "initialized"
    BRANCH_READY = "branch_ready"


class CommandResult(BaseModel):
    """Outcome of a single git subprocess invocation.

    Attributes:
        args: Argument vector passed to git (redacted)
        cwd: Directory the command ran in
        exit_code: Process exit status (127 if git could not be started)
        stdout: Captured standard output (redacted)
        stderr: Captured standard error (redacted)
    """

    model_config = ConfigDict(frozen=True)

    args: list[str]
    cwd: Path
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """True if the command exited with status 0."""
        return self.exit_code == 0


class Credentials(BaseModel):
    """Username and token substituted into the remote URL at push time."""

    model_config = ConfigDict(frozen=True)

    username: SecretStr
    token: SecretStr

    def secrets(self) -> set[str]:
        """Raw credential values, for redaction registration."""
        return {self.username.get_secret_value(), self.token.get_secret_value()}


class DeployTarget(BaseModel):
    """A fully resolved deploy unit.

    Attributes:
        name: Target name from configuration
        source_dir: Built artifact directory to publish
        work_dir: Persistent working copy, never the source repository itself
        remote_url: Remote URL or path, never carrying credentials
        branch: Local branch to commit on
        remote_branch: Branch name on the remote (defaults to ``branch``)
        message: Commit message template with ``%token%`` placeholders
        commit: Create a commit (False stages only)
        push: Push to the remote (False keeps the deploy local)
        connect_commits: Keep unpublished local commits on the remote tip and
            require a clean source tree (False always resets onto the remote tip)
        credentials: Optional credentials injected at push time
        tag: Optional tag to create and push
        force: Force-push the branch
        shallow_fetch: Fetch only the branch tip
        prune: Remove files absent from ``source_dir``
        git_config: Local git configuration applied to the working copy
        allow_unresolved_tokens: Leave unknown placeholders in the message
    """

    model_config = ConfigDict(frozen=True)

    name: str
    source_dir: Path
    work_dir: Path
    remote_url: str
    branch: str
    remote_branch: str | None = None
    message: str = DEFAULT_MESSAGE
    commit: bool = True
    push: bool = True
    connect_commits: bool = True
    credentials: Credentials | None = None
    tag: str | None = None
    force: bool = False
    shallow_fetch: bool = False
    prune: bool = True
    git_config: dict[str, str] = Field(default_factory=dict)
    allow_unresolved_tokens: bool = False

    @property
    def push_branch(self) -> str:
        """Branch name written on the remote."""
        return self.remote_branch or self.branch

    def secrets(self) -> set[str]:
        """Sensitive substrings that must never reach a log sink."""
        return self.credentials.secrets() if self.credentials else set()

    def redacted(self) -> DeployTarget:
        """Copy of this target with credentials removed, safe to display."""
        return self.model_copy(update={"credentials": None})


class SourceInfo(BaseModel):
    """Identity of the source repository a deploy was built from.

    Attributes:
        name: Source repository directory name
        commit: Full sha of HEAD (None if not a git working copy)
        short_commit: 7-character abbreviation of ``commit``
        branch: Checked-out branch name, ``HEAD`` when detached (None if unknown)
        is_working_copy: Whether the source tree is a git working copy
        is_clean: Whether the source tree has no uncommitted changes
    """

    model_config = ConfigDict(frozen=True)

    name: str
    commit: str | None = None
    short_commit: str | None = None
    branch: str | None = None
    is_working_copy: bool = False
    is_clean: bool = False


class CommitResult(BaseModel):
    """Result of staging and committing the build output.

    Attributes:
        committed: True if a new commit was created
        sha: Branch tip after the operation (None if the branch is unborn)
        message: Rendered commit message (None if nothing was committed)
        staged_changes: True if the index differed from the branch tip
    """

    model_config = ConfigDict(frozen=True)

    committed: bool
    sha: str | None = None
    message: str | None = None
    staged_changes: bool = False

    @property
    def short_sha(self) -> str | None:
        """7-character abbreviation of the branch tip."""
        return self.sha[:7] if self.sha else None


class PushResult(BaseModel):
    """Result of publishing a branch to its remote.

    Attributes:
        success: False only if the push was attempted and failed
        pushed: True if the branch was sent to the remote
        tag_pushed: True if the configured tag was sent
        result: Underlying git result of the branch push, if any
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    pushed: bool = False
    tag_pushed: bool = False
    result: CommandResult | None = None


class DeployOutcome(BaseModel):
    """Per-target deploy outcome, safe to log and display.

    Attributes:
        target: Target name
        remote_url: Redacted remote URL
        branch: Remote branch name
        success: True if every step of the target succeeded
        message: Redacted summary of what happened
        error: Failure classification, or NOTHING_TO_COMMIT for no-op deploys
        commit_sha: Branch tip after the deploy
        pushed: True if the branch reached the remote
    """

    model_config = ConfigDict(frozen=True)

    target: str
    remote_url: str
    branch: str
    success: bool
    message: str
    error: ErrorKind | None = None
    commit_sha: str | None = None
    pushed: bool = False


class DeployReport(BaseModel):
    """Ordered outcomes of one deploy invocation."""

    model_config = ConfigDict(frozen=True)

    outcomes: list[DeployOutcome] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        """True if every target succeeded."""
        return all(outcome.success for outcome in self.outcomes)

    @property
    def failed(self) -> list[DeployOutcome]:
        """Outcomes of failed targets, in configuration order."""
        return [outcome for outcome in self.outcomes if not outcome.success]

    @property
    def exit_code(self) -> int:
        """Process exit status for this report."""
        return 0 if self.success else 1
