"""Deploy orchestration for buildcontrol.

The DeployOrchestrator runs every configured target through
materialize -> stage/commit -> publish, strictly in configuration order.
Configuration problems abort the whole invocation before any working copy
is touched; runtime failures are recorded per target and never stop the
remaining targets from being attempted.

Targets that share a working copy, remote and branch are published
together: earlier ones stage their output and the last one commits and
pushes the combined tree.

Example usage:
    >>> from pathlib import Path
    >>> from buildcontrol.config import load_config, resolve_targets
    >>> from buildcontrol.pipeline.orchestrator import DeployOrchestrator
    >>>
    >>> config = load_config()
    >>> orchestrator = DeployOrchestrator()
    >>> targets = resolve_targets(config, remote_aliases=orchestrator.source_remotes(config.source_repo))
    >>> report = orchestrator.deploy(targets, source_repo=config.source_repo)
    >>> for outcome in report.outcomes:
    ...     print(outcome.target, outcome.success, outcome.message)
    >>> raise SystemExit(report.exit_code)
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from pathlib import Path

from buildcontrol.logging import (
    bind_target_context,
    clear_target_context,
    get_logger,
    set_run_id,
)
from buildcontrol.pipeline.branch import BranchMaterializer
from buildcontrol.pipeline.commit import (
    CommitComposer,
    message_tokens,
    render_message,
    validate_template,
)
from buildcontrol.pipeline.errors import DeployError, InvalidConfigurationError
from buildcontrol.pipeline.git_ops import GitRunner, RepositoryProber
from buildcontrol.pipeline.models import (
    CommitResult,
    DeployOutcome,
    DeployReport,
    DeployTarget,
    ErrorKind,
    PushResult,
    SourceInfo,
)
from buildcontrol.pipeline.publisher import RemotePublisher
from buildcontrol.redaction import redact, register_secrets, registered_secrets


# %sourceBranch% value for a source checked out at a detached HEAD
DETACHED_HEAD = "HEAD"


def _is_within(path: Path, other: Path) -> bool:
    return path == other or other in path.parents


def _publish_group(target: DeployTarget) -> tuple[Path, str, str]:
    return (target.work_dir.resolve(), target.remote_url, target.branch)


def deferred_targets(targets: Sequence[DeployTarget]) -> dict[int, str]:
    """Map target positions to the later target that publishes for them.

    Targets sharing a working copy, remote and branch form one publication:
    all but the last only stage their output, and the last commits and
    pushes the combined tree, so no intermediate state reaches the remote.
    """
    last_in_group: dict[tuple[Path, str, str], int] = {}
    for index, target in enumerate(targets):
        last_in_group[_publish_group(target)] = index

    deferred = {}
    for index, target in enumerate(targets):
        last = last_in_group[_publish_group(target)]
        if last != index:
            deferred[index] = targets[last].name
    return deferred


class DeployOrchestrator:
    """Composes the pipeline components to deploy an ordered list of targets.

    Attributes:
        runner: GitRunner shared by every component
        prober: RepositoryProber
        materializer: BranchMaterializer
        composer: CommitComposer
        publisher: RemotePublisher
        logger: Structured logger instance
    """

    def __init__(self, runner: GitRunner | None = None) -> None:
        """Initialize the orchestrator and its components.

        Args:
            runner: GitRunner to use (default: a new GitRunner)
        """
        self.runner = runner or GitRunner()
        self.prober = RepositoryProber(self.runner)
        self.materializer = BranchMaterializer(self.runner, self.prober)
        self.composer = CommitComposer(self.runner, self.prober)
        self.publisher = RemotePublisher(self.runner, self.prober)
        self.logger = get_logger(__name__)

    def source_remotes(self, source_repo: Path) -> dict[str, str]:
        """Map the source repository's remote names to their URLs.

        Used to resolve targets that name a remote (e.g. ``origin``) instead
        of giving a URL. Returns an empty mapping outside a working copy.
        """
        listing = self.runner.run(["remote"], cwd=source_repo)
        if not listing.ok:
            return {}
        remotes = {}
        for name in listing.stdout.split():
            url = self.prober.remote_url(source_repo, name)
            if url:
                remotes[name] = url
        return remotes

    def inspect_source(self, source_repo: Path) -> SourceInfo:
        """Describe the source repository the build output came from."""
        source_repo = source_repo.resolve()
        in_work_tree = self.runner.run(
            ["rev-parse", "--is-inside-work-tree"], cwd=source_repo
        ).ok
        if not in_work_tree:
            return SourceInfo(name=source_repo.name)

        return SourceInfo(
            name=source_repo.name,
            commit=self.prober.head_commit(source_repo),
            short_commit=self.prober.head_commit(source_repo, short=True),
            branch=self.prober.current_branch(source_repo) or DETACHED_HEAD,
            is_working_copy=True,
            is_clean=not self.prober.has_uncommitted_changes(source_repo),
        )

    def preflight(
        self, targets: Sequence[DeployTarget], source_repo: Path, source: SourceInfo
    ) -> None:
        """Validate every target before anything is deployed.

        Raises:
            InvalidConfigurationError: On the first invalid target
        """
        if not targets:
            raise InvalidConfigurationError("No deploy targets configured")

        source_repo = source_repo.resolve()
        for target in targets:
            work_dir = target.work_dir.resolve()
            source_dir = target.source_dir.resolve()

            if work_dir == source_repo:
                raise InvalidConfigurationError(
                    f"Target '{target.name}': work_dir must not be the source repository "
                    f"({source_repo})"
                )
            if not source_dir.is_dir():
                raise InvalidConfigurationError(
                    f"Target '{target.name}': build directory {source_dir} does not exist"
                )
            if _is_within(work_dir, source_dir) or _is_within(source_dir, work_dir):
                raise InvalidConfigurationError(
                    f"Target '{target.name}': work_dir and dir must not contain each other"
                )

            validate_template(target.message, target.allow_unresolved_tokens)
            render_message(
                target.message,
                message_tokens(target, source),
                allow_unresolved=target.allow_unresolved_tokens,
            )

            if target.connect_commits:
                if not source.is_working_copy:
                    raise InvalidConfigurationError(
                        f"Target '{target.name}': connect_commits requires {source_repo} "
                        "to be a git working copy"
                    )
                if not source.is_clean:
                    raise InvalidConfigurationError(
                        f"Target '{target.name}': {source_repo} has uncommitted changes; "
                        "commit them first or disable connect_commits"
                    )

    def deploy(self, targets: Sequence[DeployTarget], source_repo: Path) -> DeployReport:
        """Deploy every target in order and report each outcome.

        Args:
            targets: Resolved targets in configuration order
            source_repo: The pipeline's primary source tree

        Returns:
            DeployReport with one outcome per target

        Raises:
            InvalidConfigurationError: If any target fails pre-flight validation
        """
        for target in targets:
            register_secrets(target.secrets())

        source = self.inspect_source(source_repo)
        self.preflight(targets, source_repo, source)

        set_run_id(uuid.uuid4().hex[:8])
        self.logger.info(
            "deploy_started",
            target_count=len(targets),
            source=source.name,
            source_commit=source.short_commit,
        )

        deferred = deferred_targets(targets)
        outcomes = []
        for index, target in enumerate(targets):
            bind_target_context(target.name)
            try:
                outcomes.append(
                    self.deploy_target(target, source, published_by=deferred.get(index))
                )
            finally:
                clear_target_context()

        report = DeployReport(outcomes=outcomes)
        self.logger.info(
            "deploy_finished",
            succeeded=len(outcomes) - len(report.failed),
            failed=len(report.failed),
        )
        set_run_id(None)
        return report

    def deploy_target(
        self, target: DeployTarget, source: SourceInfo, published_by: str | None = None
    ) -> DeployOutcome:
        """Deploy a single target, converting failures into an outcome.

        Args:
            target: Resolved deploy target
            source: Identity of the source repository
            published_by: Name of a later target sharing this target's working
                copy and branch; when set, the output is only staged and that
                target commits and pushes it

        Returns:
            DeployOutcome for the target
        """
        remote = self.publisher.display_remote(target)
        self.logger.info(
            "target_started",
            remote=remote,
            branch=target.branch,
            work_dir=str(target.work_dir),
            commit=target.commit,
            push=target.push,
            published_by=published_by,
        )

        commit_result: CommitResult | None = None
        try:
            self.materializer.materialize(target)
            if published_by is None:
                commit_result = self.composer.stage_and_commit(target, source)
                push_result = self.publisher.publish(target)
            else:
                commit_result = self.composer.stage_and_commit(
                    target.model_copy(update={"commit": False}), source
                )
                push_result = PushResult(success=True, pushed=False)
                self.logger.info(
                    "publish_deferred", branch=target.branch, published_by=published_by
                )
        except DeployError as e:
            self.logger.error(
                "target_failed",
                remote=remote,
                error_kind=e.kind.value,
                error=e.message,
            )
            return self._outcome(target, False, e.message, e.kind, commit_result)
        except OSError as e:
            message = redact(str(e), registered_secrets())
            self.logger.error(
                "target_failed",
                remote=remote,
                error_kind=ErrorKind.SUBPROCESS_FAILURE.value,
                error=message,
                error_type=type(e).__name__,
            )
            return self._outcome(
                target, False, message, ErrorKind.SUBPROCESS_FAILURE, commit_result
            )

        message = self._summarize(
            target, remote, commit_result, push_result, published_by
        )
        error = None if commit_result.staged_changes else ErrorKind.NOTHING_TO_COMMIT
        self.logger.info("target_succeeded", remote=remote, summary=message)
        return self._outcome(
            target, True, message, error, commit_result, pushed=push_result.pushed
        )

    def _outcome(
        self,
        target: DeployTarget,
        success: bool,
        message: str,
        error: ErrorKind | None,
        commit_result: CommitResult | None,
        pushed: bool = False,
    ) -> DeployOutcome:
        return DeployOutcome(
            target=target.name,
            remote_url=self.publisher.display_remote(target),
            branch=target.push_branch,
            success=success,
            message=redact(message, registered_secrets()),
            error=error,
            commit_sha=commit_result.sha if commit_result else None,
            pushed=pushed,
        )

    @staticmethod
    def _summarize(
        target: DeployTarget,
        remote: str,
        commit: CommitResult,
        push: PushResult,
        published_by: str | None = None,
    ) -> str:
        if commit.committed:
            parts = [f"committed {commit.short_sha} on {target.branch}"]
        elif commit.staged_changes:
            parts = [f"staged changes on {target.branch} without committing"]
        else:
            parts = [f"no changes on {target.branch}"]

        if published_by is not None:
            parts.append(f"published with {published_by}")
        elif push.pushed:
            parts.append(f"pushed to {remote} {target.push_branch}")
            if push.tag_pushed:
                parts.append(f"tagged {target.tag}")
        elif not target.push:
            parts.append("push disabled")
        return ", ".join(parts)
