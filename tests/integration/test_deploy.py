"""Integration tests for end-to-end deploys.

These tests run the full pipeline with real git commands against temporary
repositories: a bare remote, a source repository and persistent working
copies.
"""

from __future__ import annotations

from pathlib import Path

import git
import pytest

from buildcontrol.pipeline.errors import InvalidConfigurationError
from buildcontrol.pipeline.models import ErrorKind
from buildcontrol.pipeline.orchestrator import DeployOrchestrator

pytestmark = pytest.mark.integration


@pytest.fixture
def orchestrator() -> DeployOrchestrator:
    """Create an orchestrator running real git commands."""
    return DeployOrchestrator()


def _source_path(source_repo: git.Repo) -> Path:
    return Path(source_repo.working_dir)


def test_basic_deploy(orchestrator, make_target, source_repo, remote_repo, remote_files) -> None:
    """Test that the build output is committed and pushed to a new branch."""
    target = make_target()

    report = orchestrator.deploy([target], _source_path(source_repo))

    assert report.success
    assert report.exit_code == 0
    outcome = report.outcomes[0]
    assert outcome.pushed
    assert outcome.error is None

    assert "gh-pages" in remote_repo.heads
    assert remote_files("gh-pages") == {"index.html", "css/site.css"}

    tip = remote_repo.commit("gh-pages")
    assert outcome.commit_sha == tip.hexsha
    short_sha = source_repo.head.commit.hexsha[:7]
    assert tip.message.strip() == f"Built source from commit {short_sha} on branch main"
    assert "%" not in tip.message


def test_working_copy_keeps_clean_remote_url(
    orchestrator, make_target, source_repo, remote_repo
) -> None:
    """Test that the working copy is registered against the remote under its own name."""
    target = make_target()
    orchestrator.deploy([target], _source_path(source_repo))

    work = git.Repo(target.work_dir)
    assert work.remotes["buildcontrol"].url == str(remote_repo.git_dir)
    assert work.active_branch.name == "gh-pages"


def test_second_identical_deploy_creates_no_commit(
    orchestrator, make_target, source_repo, remote_repo
) -> None:
    """Test that deploying unchanged output is a successful no-op."""
    target = make_target()
    orchestrator.deploy([target], _source_path(source_repo))
    first_tip = remote_repo.commit("gh-pages").hexsha

    report = orchestrator.deploy([target], _source_path(source_repo))

    assert report.success
    assert report.outcomes[0].error is ErrorKind.NOTHING_TO_COMMIT
    assert remote_repo.commit("gh-pages").hexsha == first_tip
    assert git.Repo(target.work_dir).head.commit.hexsha == first_tip


def test_changed_output_extends_history(
    orchestrator, make_target, source_repo, remote_repo, remote_files, commit_source_change
) -> None:
    """Test that a new deploy is a child of the previous deploy commit."""
    target = make_target()
    orchestrator.deploy([target], _source_path(source_repo))
    first_tip = remote_repo.commit("gh-pages")

    new_sha = commit_source_change("dist/about.html", "<h1>About</h1>\n")
    report = orchestrator.deploy([target], _source_path(source_repo))

    assert report.success
    tip = remote_repo.commit("gh-pages")
    assert tip.parents == (first_tip,)
    assert f"from commit {new_sha[:7]}" in tip.message
    assert remote_files("gh-pages") == {"index.html", "about.html", "css/site.css"}


def test_removed_files_are_pruned(
    orchestrator, make_target, source_repo, remote_files
) -> None:
    """Test that files deleted from the build output disappear from the branch."""
    target = make_target()
    orchestrator.deploy([target], _source_path(source_repo))

    source_repo.git.rm("-r", "dist/css")
    source_repo.git.commit("-m", "Drop stylesheet")
    orchestrator.deploy([target], _source_path(source_repo))

    assert remote_files("gh-pages") == {"index.html"}


def test_preview_build_without_push(
    orchestrator, make_target, source_repo, remote_repo
) -> None:
    """Test that push=false commits on a local branch and never reaches the remote."""
    target = make_target(name="preview", branch="build", push=False, connect_commits=False)

    report = orchestrator.deploy([target], _source_path(source_repo))

    assert report.success
    assert not report.outcomes[0].pushed
    work = git.Repo(target.work_dir)
    assert "build" in work.heads
    assert work.heads["build"].commit.message.startswith("Built source from commit")
    assert "build" not in remote_repo.heads


def test_preview_allows_dirty_source(orchestrator, make_target, source_repo) -> None:
    """Test that a preview may be built from uncommitted source changes."""
    (_source_path(source_repo) / "dist" / "draft.html").write_text("draft\n")
    target = make_target(name="preview", branch="build", push=False, connect_commits=False)

    report = orchestrator.deploy([target], _source_path(source_repo))

    assert report.success
    files = git.Repo(target.work_dir).git.ls_files().splitlines()
    assert "draft.html" in files


def test_commit_disabled_leaves_tip_unchanged(
    orchestrator, make_target, source_repo, remote_repo, commit_source_change
) -> None:
    """Test that commit=false stages the new output without committing it."""
    orchestrator.deploy([make_target()], _source_path(source_repo))
    tip = remote_repo.commit("gh-pages").hexsha

    commit_source_change("dist/new.html", "new\n")
    target = make_target(commit=False)
    report = orchestrator.deploy([target], _source_path(source_repo))

    assert report.success
    work = git.Repo(target.work_dir)
    assert work.head.commit.hexsha == tip
    assert remote_repo.commit("gh-pages").hexsha == tip
    assert "new.html" in work.git.diff("--cached", "--name-only").splitlines()


def test_dirty_source_rejected_for_connected_deploy(
    orchestrator, make_target, source_repo
) -> None:
    """Test that connected deploys refuse uncommitted source changes."""
    (_source_path(source_repo) / "dist" / "draft.html").write_text("draft\n")
    target = make_target()

    with pytest.raises(InvalidConfigurationError, match="uncommitted changes"):
        orchestrator.deploy([target], _source_path(source_repo))
    assert not target.work_dir.exists()


def test_new_branch_shares_no_history(
    orchestrator, make_target, source_repo, remote_repo
) -> None:
    """Test that a branch created by a deploy is an orphan."""
    source_repo.create_remote("origin", str(remote_repo.git_dir))
    source_repo.git.push("origin", "main")

    report = orchestrator.deploy([make_target()], _source_path(source_repo))

    assert report.success
    tip = remote_repo.commit("gh-pages")
    assert tip.parents == ()
    assert remote_repo.merge_base("gh-pages", "main") == []


def test_existing_remote_branch_is_extended(
    orchestrator, make_target, source_repo, remote_repo, remote_files, tmp_path
) -> None:
    """Test that a branch already on the remote is built upon, not replaced."""
    other = git.Repo.init(tmp_path / "other")
    with other.config_writer() as writer:
        writer.set_value("user", "name", "Someone Else")
        writer.set_value("user", "email", "else@example.com")
        writer.set_value("commit", "gpgsign", "false")
    (tmp_path / "other" / "CNAME").write_text("example.com\n")
    other.git.add("--all")
    other.git.commit("-m", "Existing pages")
    other.git.push(str(remote_repo.git_dir), "HEAD:refs/heads/gh-pages")
    existing_tip = remote_repo.commit("gh-pages")

    report = orchestrator.deploy([make_target()], _source_path(source_repo))

    assert report.success
    tip = remote_repo.commit("gh-pages")
    assert tip.parents == (existing_tip,)
    assert remote_files("gh-pages") == {"index.html", "css/site.css"}


def test_remote_branch_name_differs_from_local(
    orchestrator, make_target, source_repo, remote_repo
) -> None:
    """Test committing on one branch and publishing it under another name."""
    target = make_target(branch="build", remote_branch="gh-pages")

    report = orchestrator.deploy([target], _source_path(source_repo))

    assert report.success
    assert report.outcomes[0].branch == "gh-pages"
    assert "gh-pages" in remote_repo.heads
    assert "build" not in remote_repo.heads
    assert git.Repo(target.work_dir).heads["build"].commit == remote_repo.commit("gh-pages")


def test_tag_is_pushed(orchestrator, make_target, source_repo, remote_repo) -> None:
    """Test that a configured tag points at the deployed commit on the remote."""
    report = orchestrator.deploy([make_target(tag="v1.0.0")], _source_path(source_repo))

    assert report.success
    assert remote_repo.tags["v1.0.0"].commit == remote_repo.commit("gh-pages")


def test_shallow_fetch_deploy(
    orchestrator, make_target, source_repo, remote_repo, commit_source_change
) -> None:
    """Test deploying from a fresh working copy with a shallow fetch."""
    orchestrator.deploy([make_target()], _source_path(source_repo))
    first_tip = remote_repo.commit("gh-pages")

    commit_source_change("dist/about.html", "<h1>About</h1>\n")
    target = make_target(name="shallow", shallow_fetch=True)
    report = orchestrator.deploy([target], _source_path(source_repo))

    assert report.success
    tip = remote_repo.commit("gh-pages")
    assert tip.parents == (first_tip,)


def test_merge_multiple_repos_publishes_last_content(
    orchestrator, make_target, source_repo, remote_repo, remote_files, commit_source_change, tmp_path
) -> None:
    """Test two targets sharing a working copy and branch: only the last state is published."""
    commit_source_change("docs/guide.html", "<h1>Guide</h1>\n")
    shared = tmp_path / "work" / "shared"
    site = make_target(name="site", work_dir=shared)
    docs = make_target(
        name="docs", work_dir=shared, source_dir=_source_path(source_repo) / "docs"
    )

    report = orchestrator.deploy([site, docs], _source_path(source_repo))

    assert report.success
    assert [o.target for o in report.outcomes] == ["site", "docs"]
    assert not report.outcomes[0].pushed
    assert "published with docs" in report.outcomes[0].message
    assert report.outcomes[1].pushed
    assert remote_files("gh-pages") == {"guide.html"}
    history = list(remote_repo.iter_commits("gh-pages"))
    assert len(history) == 1
    assert history[0].parents == ()


def test_merge_multiple_repos_second_run_is_noop(
    orchestrator, make_target, source_repo, remote_repo, commit_source_change, tmp_path
) -> None:
    """Test that redeploying an unchanged group adds no commit to the remote."""
    commit_source_change("docs/guide.html", "<h1>Guide</h1>\n")
    shared = tmp_path / "work" / "shared"
    site = make_target(name="site", work_dir=shared)
    docs = make_target(
        name="docs", work_dir=shared, source_dir=_source_path(source_repo) / "docs"
    )
    orchestrator.deploy([site, docs], _source_path(source_repo))
    first_tip = remote_repo.commit("gh-pages")

    report = orchestrator.deploy([site, docs], _source_path(source_repo))

    assert report.success
    assert report.outcomes[1].error is ErrorKind.NOTHING_TO_COMMIT
    assert remote_repo.commit("gh-pages") == first_tip


def test_merge_multiple_repos_accumulates_without_prune(
    orchestrator, make_target, source_repo, remote_repo, remote_files, commit_source_change, tmp_path
) -> None:
    """Test that prune=false lets several build outputs share one branch."""
    commit_source_change("docs/guide.html", "<h1>Guide</h1>\n")
    shared = tmp_path / "work" / "shared"
    site = make_target(name="site", work_dir=shared, prune=False)
    docs = make_target(
        name="docs",
        work_dir=shared,
        source_dir=_source_path(source_repo) / "docs",
        prune=False,
    )

    report = orchestrator.deploy([site, docs], _source_path(source_repo))

    assert report.success
    assert remote_files("gh-pages") == {"index.html", "css/site.css", "guide.html"}
    assert len(list(remote_repo.iter_commits("gh-pages"))) == 1


def test_failing_target_does_not_block_others(
    orchestrator, make_target, source_repo, remote_repo, tmp_path
) -> None:
    """Test that an unreachable remote fails only its own target."""
    broken = make_target(name="broken", remote_url=str(tmp_path / "missing.git"))
    good = make_target(name="good")

    report = orchestrator.deploy([broken, good], _source_path(source_repo))

    assert not report.success
    assert report.exit_code == 1
    assert report.outcomes[0].error is ErrorKind.REMOTE_UNREACHABLE
    assert report.outcomes[1].success
    assert "gh-pages" in remote_repo.heads


def test_unreachable_remote_tolerated_for_local_preview(
    orchestrator, make_target, source_repo, tmp_path
) -> None:
    """Test that a local-only preview does not need the remote."""
    target = make_target(
        name="offline",
        remote_url=str(tmp_path / "missing.git"),
        push=False,
        connect_commits=False,
    )

    report = orchestrator.deploy([target], _source_path(source_repo))

    assert report.success
    assert "gh-pages" in git.Repo(target.work_dir).heads


def test_remote_mismatch_rebuilds_working_copy(
    orchestrator, make_target, source_repo, remote_repo, tmp_path
) -> None:
    """Test that a working copy registered for another remote is re-initialized."""
    work_dir = tmp_path / "work" / "reused"
    orchestrator.deploy([make_target(work_dir=work_dir)], _source_path(source_repo))

    second_remote = git.Repo.init(tmp_path / "second.git", bare=True)
    target = make_target(work_dir=work_dir, remote_url=str(second_remote.git_dir))
    report = orchestrator.deploy([target], _source_path(source_repo))

    assert report.success
    assert git.Repo(work_dir).remotes["buildcontrol"].url == str(second_remote.git_dir)
    assert "gh-pages" in second_remote.heads
    assert second_remote.commit("gh-pages").parents == ()


def test_corrupt_working_copy_is_rebuilt(
    orchestrator, make_target, source_repo, remote_repo, tmp_path
) -> None:
    """Test that unusable git metadata in the work dir is replaced."""
    work_dir = tmp_path / "work" / "corrupt"
    work_dir.mkdir(parents=True)
    (work_dir / ".git").write_text(f"gitdir: {tmp_path / 'nowhere'}\n")

    report = orchestrator.deploy([make_target(work_dir=work_dir)], _source_path(source_repo))

    assert report.success
    assert (work_dir / ".git").is_dir()
    assert "gh-pages" in remote_repo.heads


def test_diverged_local_branch_moves_to_remote_tip(
    orchestrator, make_target, source_repo, remote_repo, commit_source_change, tmp_path
) -> None:
    """Test that unpublished local commits never block publishing."""
    first_work = tmp_path / "work" / "first"
    orchestrator.deploy([make_target(work_dir=first_work)], _source_path(source_repo))

    # Local-only commit in the first working copy
    commit_source_change("dist/local.html", "local\n")
    orchestrator.deploy([make_target(work_dir=first_work, push=False)], _source_path(source_repo))

    # Someone else publishes from another working copy
    commit_source_change("dist/other.html", "other\n")
    other_work = tmp_path / "work" / "second"
    orchestrator.deploy([make_target(name="second", work_dir=other_work)], _source_path(source_repo))
    published = remote_repo.commit("gh-pages")

    commit_source_change("dist/final.html", "final\n")
    report = orchestrator.deploy([make_target(work_dir=first_work)], _source_path(source_repo))

    assert report.success
    tip = remote_repo.commit("gh-pages")
    assert tip.parents == (published,)


def test_unconnected_deploy_builds_on_moved_remote(
    orchestrator, make_target, source_repo, remote_repo, commit_source_change, tmp_path
) -> None:
    """Test that a reused working copy follows a remote that moved on without it."""
    first_work = tmp_path / "work" / "first"
    orchestrator.deploy([make_target(work_dir=first_work)], _source_path(source_repo))

    commit_source_change("dist/other.html", "other\n")
    other_work = tmp_path / "work" / "second"
    orchestrator.deploy([make_target(name="second", work_dir=other_work)], _source_path(source_repo))
    published = remote_repo.commit("gh-pages")

    commit_source_change("dist/final.html", "final\n")
    target = make_target(work_dir=first_work, connect_commits=False)
    report = orchestrator.deploy([target], _source_path(source_repo))

    assert report.success, report.outcomes[0].message
    tip = remote_repo.commit("gh-pages")
    assert tip.parents == (published,)
    assert git.Repo(first_work).head.commit == tip


def test_unconnected_deploy_drops_unpublished_commits(
    orchestrator, make_target, source_repo, remote_repo, commit_source_change, tmp_path
) -> None:
    """Test that connect_commits=false always builds on the remote tip."""
    work_dir = tmp_path / "work" / "production"
    orchestrator.deploy([make_target(work_dir=work_dir)], _source_path(source_repo))
    published = remote_repo.commit("gh-pages")

    commit_source_change("dist/local.html", "local\n")
    orchestrator.deploy(
        [make_target(work_dir=work_dir, push=False, connect_commits=False)],
        _source_path(source_repo),
    )
    assert git.Repo(work_dir).head.commit.parents == (published,)

    commit_source_change("dist/final.html", "final\n")
    report = orchestrator.deploy(
        [make_target(work_dir=work_dir, connect_commits=False)], _source_path(source_repo)
    )

    assert report.success
    tip = remote_repo.commit("gh-pages")
    assert tip.parents == (published,)
    assert {"local.html", "final.html"} <= {item.path for item in tip.tree.traverse()}


def test_deploy_from_detached_source_checkout(
    orchestrator, make_target, source_repo, remote_repo
) -> None:
    """Test the default message when the source is checked out at a detached HEAD."""
    source_repo.git.checkout("--detach")
    source_sha = source_repo.head.commit.hexsha

    report = orchestrator.deploy([make_target()], _source_path(source_repo))

    assert report.success
    message = remote_repo.commit("gh-pages").message
    assert source_sha[:7] in message
    assert "on branch HEAD" in message
    assert "%" not in message
