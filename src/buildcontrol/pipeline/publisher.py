"""Pushing deploy branches to their remotes.

The RemotePublisher sends the local deploy branch (and optional tag) to the
remote registered in the working copy. Credentials are combined with the
remote URL in memory only and reach git through process-scoped
configuration, so the working copy's ``.git/config`` always holds the clean
URL and log lines show ``https://<CREDENTIALS>@host/path``.

Example usage:
    >>> from buildcontrol.pipeline.git_ops import GitRunner
    >>> from buildcontrol.pipeline.publisher import RemotePublisher
    >>>
    >>> publisher = RemotePublisher(GitRunner())
    >>> result = publisher.publish(target)
    >>> result.pushed
    True
"""

from __future__ import annotations

from buildcontrol.logging import get_logger
from buildcontrol.pipeline.branch import REMOTE_NAME
from buildcontrol.pipeline.errors import RemoteUnreachableError, SubprocessFailureError
from buildcontrol.pipeline.git_ops import GitRunner, RepositoryProber, target_env
from buildcontrol.pipeline.models import DeployTarget, PushResult
from buildcontrol.redaction import authenticated_url, redact

# Ref status markers git prints when the remote refuses an update
REJECTION_MARKERS = ("[rejected]", "[remote rejected]")


def _is_rejection(stderr: str) -> bool:
    return any(marker in stderr for marker in REJECTION_MARKERS)


class RemotePublisher:
    """Pushes a target's branch to its remote.

    Attributes:
        runner: GitRunner for all git invocations
        prober: RepositoryProber built on the same runner
        logger: Structured logger instance
    """

    def __init__(self, runner: GitRunner, prober: RepositoryProber | None = None) -> None:
        self.runner = runner
        self.prober = prober or RepositoryProber(runner)
        self.logger = get_logger(__name__)

    def authenticated_remote(self, target: DeployTarget) -> str:
        """URL git effectively pushes to: the remote URL with credentials embedded.

        Never log or persist the return value; use ``display_remote`` instead.
        """
        if target.credentials is None:
            return target.remote_url
        return authenticated_url(
            target.remote_url,
            target.credentials.username.get_secret_value(),
            target.credentials.token.get_secret_value(),
        )

    def display_remote(self, target: DeployTarget) -> str:
        """Redacted form of the push URL, safe for logs."""
        return redact(self.authenticated_remote(target), target.secrets())

    def publish(self, target: DeployTarget) -> PushResult:
        """Push the target branch (and tag) to the remote.

        Args:
            target: Resolved deploy target whose working copy is BRANCH_READY

        Returns:
            PushResult; ``pushed`` is False when pushing is disabled or the
            branch has no commit yet

        Raises:
            RemoteUnreachableError: If the remote cannot be reached or rejects
                the credentials
            SubprocessFailureError: If the remote rejects the update (for
                example a non-fast-forward push)
        """
        work_dir = target.work_dir
        remote = self.display_remote(target)

        if not target.push:
            self.logger.info(
                "push_skipped",
                remote=remote,
                branch=target.branch,
                reason="push disabled",
            )
            return PushResult(success=True, pushed=False)

        if not self.prober.has_local_branch(work_dir, target.branch):
            self.logger.warning(
                "push_skipped",
                remote=remote,
                branch=target.branch,
                reason="branch has no commits",
            )
            return PushResult(success=True, pushed=False)

        refspecs = [f"refs/heads/{target.branch}:refs/heads/{target.push_branch}"]
        if target.tag:
            self._ensure_tag(target, target.tag)
            refspecs.append(f"refs/tags/{target.tag}")

        args = ["push", "--quiet"]
        if target.force:
            args.append("--force")
        args += [REMOTE_NAME, *refspecs]

        self.logger.info(
            "pushing",
            remote=remote,
            branch=target.branch,
            remote_branch=target.push_branch,
            tag=target.tag,
            force=target.force,
        )

        result = self.runner.run(args, cwd=work_dir, env=target_env(target))
        if not result.ok:
            rejected = _is_rejection(result.stderr)
            self.logger.error(
                "push_failed",
                remote=remote,
                branch=target.push_branch,
                exit_code=result.exit_code,
                rejected=rejected,
                stderr=result.stderr[:500],
            )
            if rejected:
                raise SubprocessFailureError(
                    result,
                    f"Remote {remote} rejected the push of {target.branch} "
                    f"to {target.push_branch}",
                )
            raise RemoteUnreachableError(
                f"Pushing {target.branch} to {remote} failed: {result.stderr.strip()}"
            )

        self.logger.info(
            "push_succeeded",
            remote=remote,
            branch=target.push_branch,
            tag=target.tag,
        )
        return PushResult(success=True, pushed=True, tag_pushed=bool(target.tag), result=result)

    def _ensure_tag(self, target: DeployTarget, tag: str) -> None:
        if self.prober.has_tag(target.work_dir, tag):
            self.logger.warning("tag_exists", tag=tag)
            return
        self.runner.run(["tag", tag], cwd=target.work_dir, check=True)
        self.logger.info("tag_created", tag=tag, branch=target.branch)
