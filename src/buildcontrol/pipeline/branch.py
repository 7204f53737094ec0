"""Working copy and branch materialization for buildcontrol.

The BranchMaterializer drives a target's working copy through the states
``ABSENT -> INITIALIZED -> BRANCH_READY``:

- ABSENT: no working copy at ``work_dir``. A fresh repository is
  initialized there and the remote is registered under ``REMOTE_NAME``
  with its clean (credential-free) URL.
- INITIALIZED: a usable working copy exists. It is re-used across runs;
  a corrupt copy or one registered against a different remote has its
  ``.git`` directory rebuilt.
- BRANCH_READY: the target branch is checked out. It is created from the
  remote branch when one exists, re-used when it exists locally, and
  created as an orphan (no shared history) when it exists nowhere.

Example usage:
    >>> from buildcontrol.pipeline.branch import BranchMaterializer
    >>> from buildcontrol.pipeline.git_ops import GitRunner
    >>>
    >>> materializer = BranchMaterializer(GitRunner())
    >>> state = materializer.materialize(target)
    >>> state
    <WorkingCopyState.BRANCH_READY: 'branch_ready'>
"""

from __future__ import annotations

import shutil
from collections.abc import Mapping
from pathlib import Path

from buildcontrol.logging import get_logger
from buildcontrol.pipeline.errors import (
    RemoteUnreachableError,
    SubprocessFailureError,
    WorkingCopyCorruptError,
)
from buildcontrol.pipeline.git_ops import GitRunner, RepositoryProber, target_env
from buildcontrol.pipeline.models import DeployTarget, WorkingCopyState

# Name under which the deploy remote is registered in every working copy
REMOTE_NAME = "buildcontrol"


class BranchMaterializer:
    """Ensures a working copy checked out to the target branch exists.

    Attributes:
        runner: GitRunner for all git invocations
        prober: RepositoryProber built on the same runner
        state: State reached by the last materialize call
        logger: Structured logger instance
    """

    def __init__(self, runner: GitRunner, prober: RepositoryProber | None = None) -> None:
        self.runner = runner
        self.prober = prober or RepositoryProber(runner)
        self.state = WorkingCopyState.ABSENT
        self.logger = get_logger(__name__)

    def materialize(self, target: DeployTarget) -> WorkingCopyState:
        """Bring ``target.work_dir`` to BRANCH_READY.

        Args:
            target: Resolved deploy target

        Returns:
            WorkingCopyState.BRANCH_READY

        Raises:
            RemoteUnreachableError: If the remote is required and cannot be
                reached, or fetching the branch fails
            WorkingCopyCorruptError: If a broken working copy cannot be rebuilt
            SubprocessFailureError: If a required git command fails
        """
        self.state = WorkingCopyState.ABSENT
        self._ensure_working_copy(target)
        self.state = WorkingCopyState.INITIALIZED

        env = target_env(target)
        remote_has_branch = self._probe_remote(target, env)
        self._checkout_branch(target, remote_has_branch, env)
        self.state = WorkingCopyState.BRANCH_READY

        self.logger.info(
            "branch_ready",
            work_dir=str(target.work_dir),
            branch=target.branch,
            remote_branch_existed=remote_has_branch,
        )
        return self.state

    def _ensure_working_copy(self, target: DeployTarget) -> None:
        work_dir = target.work_dir

        if not self.prober.has_git_metadata(work_dir):
            self._initialize(target, rebuild=False)
            return

        reason = None
        if not self.prober.is_working_copy(work_dir):
            reason = "corrupt"
        else:
            current_url = self.prober.remote_url(work_dir, REMOTE_NAME)
            if current_url is not None and current_url != target.remote_url:
                reason = "remote_mismatch"

        if reason is None:
            self.logger.debug("working_copy_reused", work_dir=str(work_dir))
            if self.prober.remote_url(work_dir, REMOTE_NAME) is None:
                self.runner.run(
                    ["remote", "add", REMOTE_NAME, target.remote_url], cwd=work_dir, check=True
                )
            self._apply_git_config(target)
            return

        self.logger.warning(
            "working_copy_rebuild",
            work_dir=str(work_dir),
            reason=reason,
        )
        git_dir = work_dir / ".git"
        try:
            if git_dir.is_dir() and not git_dir.is_symlink():
                shutil.rmtree(git_dir)
            else:
                git_dir.unlink()
        except OSError as e:
            raise WorkingCopyCorruptError(
                f"Cannot remove unusable git metadata in {work_dir}: {e}"
            ) from e
        self._initialize(target, rebuild=True)

    def _initialize(self, target: DeployTarget, rebuild: bool) -> None:
        work_dir = target.work_dir
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            self.runner.run(["init", "--quiet"], cwd=work_dir, check=True)
            self.runner.run(
                ["remote", "add", REMOTE_NAME, target.remote_url], cwd=work_dir, check=True
            )
        except (OSError, SubprocessFailureError) as e:
            if rebuild:
                raise WorkingCopyCorruptError(
                    f"Rebuilding the working copy in {work_dir} failed: {e}"
                ) from e
            raise

        self._apply_git_config(target)
        self.logger.info(
            "working_copy_initialized",
            work_dir=str(work_dir),
            remote=target.remote_url,
            rebuilt=rebuild,
        )

    def _apply_git_config(self, target: DeployTarget) -> None:
        for key, value in target.git_config.items():
            self.runner.run(["config", key, value], cwd=target.work_dir, check=True)

    def _probe_remote(self, target: DeployTarget, env: Mapping[str, str]) -> bool:
        """Return whether the remote has the branch, enforcing reachability."""
        work_dir = target.work_dir
        if not self.prober.is_remote_reachable(target.remote_url, cwd=work_dir, env=env):
            if target.push or target.connect_commits:
                raise RemoteUnreachableError(
                    f"Remote {target.remote_url} is unreachable or rejected the credentials"
                )
            self.logger.warning(
                "remote_unreachable_local_only",
                remote=target.remote_url,
                branch=target.branch,
            )
            return False

        return self.prober.remote_branch_exists(
            target.remote_url, target.push_branch, cwd=work_dir, env=env
        )

    def _remote_ref(self, target: DeployTarget) -> str:
        return f"refs/remotes/{REMOTE_NAME}/{target.push_branch}"

    def _fetch(self, target: DeployTarget, env: Mapping[str, str]) -> None:
        args = ["fetch", "--quiet"]
        if target.shallow_fetch:
            args += ["--depth", "1"]
        args += [REMOTE_NAME, f"+refs/heads/{target.push_branch}:{self._remote_ref(target)}"]

        result = self.runner.run(args, cwd=target.work_dir, env=env)
        if not result.ok:
            raise RemoteUnreachableError(
                f"Fetching {target.push_branch} from {target.remote_url} failed: "
                f"{result.stderr.strip()}"
            )
        self.logger.debug(
            "remote_branch_fetched",
            remote=target.remote_url,
            branch=target.push_branch,
            shallow=target.shallow_fetch,
        )

    def _checkout_branch(
        self, target: DeployTarget, remote_has_branch: bool, env: Mapping[str, str]
    ) -> None:
        work_dir = target.work_dir
        branch = target.branch
        has_local = self.prober.has_local_branch(work_dir, branch)

        if remote_has_branch:
            self._fetch(target, env)
            remote_ref = self._remote_ref(target)
            if not has_local:
                self.runner.run(
                    ["checkout", "--quiet", "--force", "-B", branch, remote_ref],
                    cwd=work_dir,
                    check=True,
                )
                self.logger.info(
                    "branch_created_from_remote",
                    branch=branch,
                    remote_branch=target.push_branch,
                )
                return

            self._switch_to(work_dir, branch)
            if target.connect_commits:
                self._sync_with_remote(work_dir, branch, remote_ref)
            else:
                self._reset_to_remote(work_dir, branch, remote_ref)
            return

        if has_local:
            self._switch_to(work_dir, branch)
            return

        self._create_orphan(work_dir, branch)

    def _switch_to(self, work_dir: Path, branch: str) -> None:
        if self.prober.current_branch(work_dir) == branch:
            return
        self.runner.run(["checkout", "--quiet", "--force", branch], cwd=work_dir, check=True)
        self.logger.debug("branch_checked_out", branch=branch)

    def _sync_with_remote(self, work_dir: Path, branch: str, remote_ref: str) -> None:
        """Move the local branch onto the remote tip unless it is already ahead."""
        local_sha = self.prober.head_commit(work_dir)
        remote_sha = self._remote_tip(work_dir, remote_ref)

        if local_sha == remote_sha:
            return

        if local_sha is not None and self.prober.is_ancestor(work_dir, local_sha, remote_sha):
            self.runner.run(
                ["merge", "--quiet", "--ff-only", remote_ref], cwd=work_dir, check=True
            )
            self.logger.info("branch_fast_forwarded", branch=branch, commit_sha=remote_sha[:7])
        elif local_sha is not None and self.prober.is_ancestor(work_dir, remote_sha, local_sha):
            # Unpublished commits from an earlier target in this run
            self.logger.info("branch_ahead_of_remote", branch=branch, commit_sha=local_sha[:7])
        else:
            # Working tree is left alone; the commit composer overwrites it next
            self.runner.run(["reset", "--quiet", "--mixed", remote_ref], cwd=work_dir, check=True)
            self.logger.warning(
                "branch_reset_to_remote",
                branch=branch,
                previous_sha=local_sha[:7] if local_sha else None,
                commit_sha=remote_sha[:7],
            )

    def _reset_to_remote(self, work_dir: Path, branch: str, remote_ref: str) -> None:
        """Base the local branch on the remote tip, dropping unpublished commits."""
        local_sha = self.prober.head_commit(work_dir)
        remote_sha = self._remote_tip(work_dir, remote_ref)
        if local_sha == remote_sha:
            return

        self.runner.run(["reset", "--quiet", "--mixed", remote_ref], cwd=work_dir, check=True)
        self.logger.info(
            "branch_reset_to_remote",
            branch=branch,
            previous_sha=local_sha[:7] if local_sha else None,
            commit_sha=remote_sha[:7],
        )

    def _remote_tip(self, work_dir: Path, remote_ref: str) -> str:
        return self.runner.run(
            ["rev-parse", remote_ref], cwd=work_dir, check=True
        ).stdout.strip()

    def _create_orphan(self, work_dir: Path, branch: str) -> None:
        """Point HEAD at an unborn branch and empty the index."""
        self.runner.run(
            ["symbolic-ref", "HEAD", f"refs/heads/{branch}"], cwd=work_dir, check=True
        )
        self.runner.run(["read-tree", "--empty"], cwd=work_dir, check=True)
        self.logger.info("orphan_branch_created", branch=branch)
