"""Deploy error hierarchy.

Every error carries an ``ErrorKind`` so the orchestrator can record it in a
``DeployOutcome`` without inspecting exception types. Messages are redacted
against the registered secrets when the exception is created.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from buildcontrol.pipeline.models import ErrorKind
from buildcontrol.redaction import redact, registered_secrets

if TYPE_CHECKING:
    from buildcontrol.pipeline.models import CommandResult


class DeployError(Exception):
    """Base class for deploy failures.

    Attributes:
        kind: Classification recorded in the deploy outcome
        message: Redacted, human-readable description
    """

    kind: ErrorKind = ErrorKind.SUBPROCESS_FAILURE

    def __init__(self, message: str) -> None:
        self.message = redact(message, registered_secrets())
        super().__init__(self.message)


class RemoteUnreachableError(DeployError):
    """Raised when a clone, fetch or push cannot reach or authenticate to the remote."""

    kind = ErrorKind.REMOTE_UNREACHABLE


class WorkingCopyCorruptError(DeployError):
    """Raised when an existing working copy is unusable and rebuilding it failed."""

    kind = ErrorKind.WORKING_COPY_CORRUPT


class InvalidConfigurationError(DeployError):
    """Raised when configuration is incomplete or inconsistent.

    Aborts the whole invocation before any target is deployed.
    """

    kind = ErrorKind.INVALID_CONFIGURATION


class SubprocessFailureError(DeployError):
    """Raised when a git command that had to succeed exited nonzero.

    Attributes:
        result: The (already redacted) command result
    """

    kind = ErrorKind.SUBPROCESS_FAILURE

    def __init__(self, result: CommandResult, message: str | None = None) -> None:
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip()
        if message is None:
            message = f"git {' '.join(result.args)} exited with status {result.exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
