"""Staging the build output and composing deploy commits.

The CommitComposer makes the working copy's content match the build output,
stages everything, and commits only when the staged tree differs from the
branch tip, so repeated deploys of unchanged output never create empty
commits.

Commit messages are templates with ``%token%`` placeholders:

    %sourceName%        source repository directory name
    %sourceCommit%      7-character sha of the source HEAD
    %sourceCommitFull%  full sha of the source HEAD
    %sourceBranch%      checked-out branch of the source repository (HEAD if detached)
    %targetName%        deploy target name
    %branch%            deploy branch name
    %timestamp%         UTC time of the deploy, ISO-8601
"""

from __future__ import annotations

import re
import shutil
from datetime import datetime, timezone
from pathlib import Path

from buildcontrol.logging import get_logger
from buildcontrol.pipeline.errors import InvalidConfigurationError
from buildcontrol.pipeline.git_ops import GitRunner, RepositoryProber
from buildcontrol.pipeline.models import CommitResult, DeployTarget, SourceInfo
from buildcontrol.redaction import redact, registered_secrets

TOKEN_PATTERN = re.compile(r"%([A-Za-z][A-Za-z0-9_]*)%")

KNOWN_TOKENS = frozenset(
    {
        "sourceName",
        "sourceCommit",
        "sourceCommitFull",
        "sourceBranch",
        "targetName",
        "branch",
        "timestamp",
    }
)


def message_tokens(
    target: DeployTarget, source: SourceInfo, now: datetime | None = None
) -> dict[str, str | None]:
    """Build the substitution values for a target's commit message."""
    now = now or datetime.now(timezone.utc)
    return {
        "sourceName": source.name,
        "sourceCommit": source.short_commit,
        "sourceCommitFull": source.commit,
        "sourceBranch": source.branch,
        "targetName": target.name,
        "branch": target.branch,
        "timestamp": now.isoformat(timespec="seconds"),
    }


def validate_template(template: str, allow_unresolved: bool = False) -> None:
    """Reject placeholders that can never be resolved.

    Raises:
        InvalidConfigurationError: If the template names an unknown token
            and unresolved tokens are not allowed
    """
    if allow_unresolved:
        return
    unknown = sorted(set(TOKEN_PATTERN.findall(template)) - KNOWN_TOKENS)
    if unknown:
        raise InvalidConfigurationError(
            f"Unknown commit message token(s): {', '.join('%' + t + '%' for t in unknown)}"
        )


def render_message(
    template: str, tokens: dict[str, str | None], allow_unresolved: bool = False
) -> str:
    """Substitute ``%token%`` placeholders in a commit message template.

    Args:
        template: Message template
        tokens: Token values; a None value counts as unresolved
        allow_unresolved: Leave unresolved placeholders in place instead of failing

    Returns:
        Rendered message, with any registered secret masked

    Raises:
        InvalidConfigurationError: If a placeholder cannot be resolved and
            unresolved tokens are not allowed
    """
    unresolved: list[str] = []

    def substitute(match: re.Match[str]) -> str:
        value = tokens.get(match.group(1))
        if value is None:
            unresolved.append(match.group(0))
            return match.group(0)
        return value

    message = TOKEN_PATTERN.sub(substitute, template)
    if unresolved and not allow_unresolved:
        raise InvalidConfigurationError(
            f"Commit message token(s) could not be resolved: {', '.join(unresolved)}"
        )
    return redact(message, registered_secrets())


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _reconcile(source: Path, destination: Path, prune: bool, top_level: bool) -> int:
    """Delete destination entries that would block or outlive the copy.

    Returns:
        Number of entries removed
    """
    removed = 0
    for entry in destination.iterdir():
        if entry.name == ".git" and top_level:
            continue
        counterpart = source / entry.name
        if not counterpart.exists() and not counterpart.is_symlink():
            if prune:
                _remove(entry)
                removed += 1
            continue
        entry_is_dir = entry.is_dir() and not entry.is_symlink()
        counterpart_is_dir = counterpart.is_dir() and not counterpart.is_symlink()
        # copytree neither replaces symlinks nor writes one over an existing entry
        if entry_is_dir != counterpart_is_dir or counterpart.is_symlink() or entry.is_symlink():
            _remove(entry)
            removed += 1
        elif entry_is_dir:
            removed += _reconcile(counterpart, entry, prune, top_level=False)
    return removed


def sync_directory(source: Path, destination: Path, prune: bool = True) -> int:
    """Copy ``source`` into ``destination``, leaving ``destination/.git`` alone.

    Args:
        source: Build output directory
        destination: Working copy root
        prune: Remove destination entries that are absent from source

    Returns:
        Number of destination entries removed
    """
    destination.mkdir(parents=True, exist_ok=True)
    removed = _reconcile(source, destination, prune, top_level=True)
    shutil.copytree(
        source,
        destination,
        symlinks=True,
        dirs_exist_ok=True,
        ignore=shutil.ignore_patterns(".git"),
    )
    return removed


class CommitComposer:
    """Stages build output in the working copy and commits it.

    Attributes:
        runner: GitRunner for all git invocations
        prober: RepositoryProber built on the same runner
        logger: Structured logger instance
    """

    def __init__(self, runner: GitRunner, prober: RepositoryProber | None = None) -> None:
        self.runner = runner
        self.prober = prober or RepositoryProber(runner)
        self.logger = get_logger(__name__)

    def stage_and_commit(self, target: DeployTarget, source: SourceInfo) -> CommitResult:
        """Synchronize, stage and (if anything changed) commit the build output.

        Args:
            target: Resolved deploy target whose branch is checked out
            source: Identity of the source repository for message tokens

        Returns:
            CommitResult; ``committed`` is False for a no-op deploy and when
            ``target.commit`` is False

        Raises:
            InvalidConfigurationError: If the message template cannot be resolved
            SubprocessFailureError: If staging or committing fails
        """
        work_dir = target.work_dir

        removed = sync_directory(target.source_dir, work_dir, prune=target.prune)
        self.runner.run(["add", "--all", "."], cwd=work_dir, check=True)
        self.logger.debug(
            "build_output_staged",
            source_dir=str(target.source_dir),
            work_dir=str(work_dir),
            removed_entries=removed,
        )

        tip = self.prober.head_commit(work_dir)

        if not self.prober.has_staged_changes(work_dir):
            self.logger.info(
                "nothing_to_commit",
                branch=target.branch,
                commit_sha=tip[:7] if tip else None,
            )
            return CommitResult(committed=False, sha=tip, staged_changes=False)

        if not target.commit:
            self.logger.info("commit_skipped", branch=target.branch, reason="commit disabled")
            return CommitResult(committed=False, sha=tip, staged_changes=True)

        message = render_message(
            target.message,
            message_tokens(target, source),
            allow_unresolved=target.allow_unresolved_tokens,
        )
        self.runner.run(["commit", "--quiet", "-m", message], cwd=work_dir, check=True)
        sha = self.prober.head_commit(work_dir)

        self.logger.info(
            "commit_created",
            branch=target.branch,
            commit_sha=sha[:7] if sha else None,
            message=message,
        )
        return CommitResult(committed=True, sha=sha, message=message, staged_changes=True)
