"""Git command execution and repository probing for buildcontrol.

This module provides the single choke point through which every git
subprocess is started. Commands are passed as argument vectors to GitPython's
command layer (never through a shell), their output is captured and redacted,
and a nonzero exit is returned to the caller instead of raised.

Example usage:
    >>> from pathlib import Path
    >>> from buildcontrol.pipeline.git_ops import GitRunner, RepositoryProber
    >>>
    >>> runner = GitRunner()
    >>> result = runner.run(["status", "--porcelain"], cwd=Path("/workspace/site"))
    >>> if not result.ok:
    ...     print(result.stderr)
    >>>
    >>> prober = RepositoryProber(runner)
    >>> prober.remote_branch_exists(
    ...     "https://github.com/org/site.git", "gh-pages", cwd=Path("/workspace")
    ... )
    True
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path

from git.cmd import Git
from git.exc import GitCommandNotFound

from buildcontrol.logging import get_logger
from buildcontrol.pipeline.errors import SubprocessFailureError
from buildcontrol.pipeline.models import CommandResult, DeployTarget
from buildcontrol.redaction import authenticated_url, redact, redact_args, registered_secrets

# Conventional exit status for "command could not be started"
EXIT_NOT_STARTED = 127

# Never let git wait for interactive credential input
_BASE_ENV = {"GIT_TERMINAL_PROMPT": "0"}


class GitRunner:
    """Runs git commands and returns structured, redacted results.

    Attributes:
        secrets: Extra sensitive substrings to mask in captured output
        logger: Structured logger instance
    """

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        """Initialize GitRunner.

        Args:
            secrets: Sensitive substrings to mask in addition to the
                process-wide registered secrets
        """
        self.secrets = set(secrets)
        self.logger = get_logger(__name__)

    def _all_secrets(self) -> set[str]:
        return self.secrets | registered_secrets()

    def run(
        self,
        args: Sequence[str],
        cwd: Path,
        *,
        check: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        """Run ``git <args>`` in ``cwd`` and wait for it to finish.

        Args:
            args: git arguments (without the leading "git")
            cwd: Working directory for the subprocess
            check: Raise SubprocessFailureError on nonzero exit
            env: Extra environment variables for the child process only

        Returns:
            CommandResult with redacted output

        Raises:
            SubprocessFailureError: If check is True and the command failed
        """
        secrets = self._all_secrets()
        safe_args = redact_args(args, secrets)

        if not cwd.is_dir():
            result = CommandResult(
                args=safe_args,
                cwd=cwd,
                exit_code=EXIT_NOT_STARTED,
                stderr=f"working directory does not exist: {cwd}",
            )
        else:
            child_env = dict(_BASE_ENV)
            if env:
                child_env.update(env)

            try:
                status, stdout, stderr = Git(str(cwd)).execute(
                    ["git", *args],
                    with_extended_output=True,
                    with_exceptions=False,
                    env=child_env,
                )
            except GitCommandNotFound as e:
                status, stdout, stderr = EXIT_NOT_STARTED, "", str(e)

            result = CommandResult(
                args=safe_args,
                cwd=cwd,
                exit_code=status if status is not None else EXIT_NOT_STARTED,
                stdout=redact(stdout, secrets),
                stderr=redact(stderr, secrets),
            )

        if result.ok:
            self.logger.debug(
                "git_command_succeeded",
                command=" ".join(safe_args),
                cwd=str(cwd),
            )
        else:
            self.logger.debug(
                "git_command_exited_nonzero",
                command=" ".join(safe_args),
                cwd=str(cwd),
                exit_code=result.exit_code,
                stderr=result.stderr[:500],
            )

        if check and not result.ok:
            self.logger.error(
                "git_command_failed",
                command=" ".join(safe_args),
                cwd=str(cwd),
                exit_code=result.exit_code,
                stderr=result.stderr[:500],
            )
            raise SubprocessFailureError(result)

        return result


class RepositoryProber:
    """Answers yes/no questions about working copies and remotes.

    A nonzero exit of the underlying probe means "no" or "absent": probing
    for something that does not exist is the expected common case.

    Attributes:
        runner: GitRunner used for every probe
    """

    def __init__(self, runner: GitRunner) -> None:
        self.runner = runner

    def has_git_metadata(self, directory: Path) -> bool:
        """Return True if ``directory`` contains a ``.git`` entry."""
        return (directory / ".git").exists()

    def is_working_copy(self, directory: Path) -> bool:
        """Return True if ``directory`` is the root of a usable working copy.

        A directory nested inside some other repository does not count.
        """
        if not self.has_git_metadata(directory):
            return False
        result = self.runner.run(["rev-parse", "--show-toplevel"], cwd=directory)
        if not result.ok:
            return False
        return Path(result.stdout.strip()).resolve() == directory.resolve()

    def has_commits(self, directory: Path) -> bool:
        """Return True if HEAD points at a commit (the branch is not unborn)."""
        return self.runner.run(["rev-parse", "--verify", "--quiet", "HEAD"], cwd=directory).ok

    def has_local_branch(self, directory: Path, branch: str) -> bool:
        """Return True if ``branch`` exists as a local head in ``directory``."""
        result = self.runner.run(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=directory
        )
        return result.ok

    def is_remote_reachable(
        self, remote_url: str, cwd: Path, env: Mapping[str, str] | None = None
    ) -> bool:
        """Return True if the remote answers a ref listing."""
        return self.runner.run(["ls-remote", "--heads", remote_url], cwd=cwd, env=env).ok

    def remote_branch_exists(
        self, remote_url: str, branch: str, cwd: Path, env: Mapping[str, str] | None = None
    ) -> bool:
        """Return True if ``branch`` exists on the remote."""
        result = self.runner.run(
            ["ls-remote", "--exit-code", "--heads", remote_url, f"refs/heads/{branch}"],
            cwd=cwd,
            env=env,
        )
        return result.ok

    def remote_url(self, directory: Path, name: str) -> str | None:
        """Return the URL stored for remote ``name`` (without insteadOf rewriting), or None."""
        result = self.runner.run(["config", "--get", f"remote.{name}.url"], cwd=directory)
        return result.stdout.strip() if result.ok else None

    def has_uncommitted_changes(self, directory: Path) -> bool:
        """Return True if the working tree or index differs from HEAD.

        Untracked files count as changes.
        """
        result = self.runner.run(["status", "--porcelain"], cwd=directory)
        return result.ok and bool(result.stdout.strip())

    def has_staged_changes(self, directory: Path) -> bool:
        """Return True if the index differs from the branch tip.

        On an unborn branch any indexed file counts as a change.
        """
        if not self.has_commits(directory):
            result = self.runner.run(["ls-files", "--cached"], cwd=directory)
            return result.ok and bool(result.stdout.strip())
        # exit 1 means "differences found"
        result = self.runner.run(["diff", "--cached", "--quiet"], cwd=directory)
        return result.exit_code == 1

    def head_commit(self, directory: Path, short: bool = False) -> str | None:
        """Return the sha of HEAD, abbreviated to 7 characters if ``short``."""
        args = ["rev-parse", "--short=7", "HEAD"] if short else ["rev-parse", "HEAD"]
        result = self.runner.run(args, cwd=directory)
        return result.stdout.strip() if result.ok else None

    def current_branch(self, directory: Path) -> str | None:
        """Return the checked-out branch name, or None if detached or unknown."""
        result = self.runner.run(["symbolic-ref", "--quiet", "--short", "HEAD"], cwd=directory)
        return result.stdout.strip() if result.ok else None

    def is_ancestor(self, directory: Path, ancestor: str, descendant: str) -> bool:
        """Return True if ``ancestor`` is reachable from ``descendant``."""
        result = self.runner.run(
            ["merge-base", "--is-ancestor", ancestor, descendant], cwd=directory
        )
        return result.ok

    def has_tag(self, directory: Path, tag: str) -> bool:
        """Return True if ``tag`` exists locally."""
        result = self.runner.run(
            ["show-ref", "--verify", "--quiet", f"refs/tags/{tag}"], cwd=directory
        )
        return result.ok


def credential_env(remote_url: str, username: str, token: str) -> dict[str, str]:
    """Environment that makes git use credentials for ``remote_url``.

    The credential-bearing URL is installed as a process-scoped
    ``url.<authenticated>.insteadOf=<clean>`` rewrite through git's
    ``GIT_CONFIG_COUNT`` environment interface, so it appears neither on the
    command line nor in any configuration file.

    Args:
        remote_url: Clean remote URL, as stored in the working copy
        username: Account name
        token: Password or access token

    Returns:
        Environment variables to pass to the git child process
    """
    auth_url = authenticated_url(remote_url, username, token)
    return {
        "GIT_CONFIG_COUNT": "1",
        "GIT_CONFIG_KEY_0": f"url.{auth_url}.insteadOf",
        "GIT_CONFIG_VALUE_0": remote_url,
    }


def target_env(target: DeployTarget) -> dict[str, str]:
    """Child-process environment carrying the target's credentials, if any."""
    if target.credentials is None:
        return {}
    return credential_env(
        target.remote_url,
        target.credentials.username.get_secret_value(),
        target.credentials.token.get_secret_value(),
    )
