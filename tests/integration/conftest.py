"""Pytest fixtures for integration tests.

Provides real git repositories in temporary directories: a bare repository
acting as the deploy remote, a source repository holding a build output
directory, and a factory for deploy targets wired to them.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import git
import pytest

from buildcontrol.pipeline.models import DeployTarget

# Identity for commits made in working copies; the user's global
# configuration is not relied upon.
DEPLOY_GIT_CONFIG = {
    "user.name": "Deploy Bot",
    "user.email": "deploy@example.com",
    "commit.gpgsign": "false",
    "tag.gpgsign": "false",
}


@pytest.fixture
def remote_repo(tmp_path: Path) -> git.Repo:
    """Create an empty bare repository to push to.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        GitPython Repo object for the bare remote
    """
    return git.Repo.init(tmp_path / "remote.git", bare=True)


@pytest.fixture
def source_repo(tmp_path: Path) -> git.Repo:
    """Create a source repository on branch main with a committed dist/ directory.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        GitPython Repo object for the source repository
    """
    repo_path = tmp_path / "source"
    repo_path.mkdir()
    repo = git.Repo.init(repo_path)

    with repo.config_writer() as writer:
        writer.set_value("user", "name", "Test User")
        writer.set_value("user", "email", "test@example.com")
        writer.set_value("commit", "gpgsign", "false")

    dist = repo_path / "dist"
    (dist / "css").mkdir(parents=True)
    (dist / "index.html").write_text("<h1>Hello</h1>\n")
    (dist / "css" / "site.css").write_text("body { margin: 0; }\n")
    (repo_path / "README.md").write_text("# Website\n")

    repo.git.add("--all")
    repo.git.commit("-m", "Initial commit")
    repo.git.branch("-M", "main")
    return repo


@pytest.fixture
def make_target(
    tmp_path: Path, remote_repo: git.Repo, source_repo: git.Repo
) -> Callable[..., DeployTarget]:
    """Factory for deploy targets publishing source_repo/dist to remote_repo.

    Returns:
        Callable accepting DeployTarget field overrides
    """

    def _make(**overrides) -> DeployTarget:
        name = overrides.get("name", "production")
        fields = {
            "name": name,
            "source_dir": Path(source_repo.working_dir) / "dist",
            "work_dir": tmp_path / "work" / name,
            "remote_url": str(remote_repo.git_dir),
            "branch": "gh-pages",
            "git_config": dict(DEPLOY_GIT_CONFIG),
        }
        fields.update(overrides)
        return DeployTarget(**fields)

    return _make


def _commit_source_change(repo: git.Repo, relative_path: str, content: str) -> str:
    path = Path(repo.working_dir) / relative_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    repo.git.add("--all")
    repo.git.commit("-m", f"Update {relative_path}")
    return repo.head.commit.hexsha


@pytest.fixture
def commit_source_change(source_repo: git.Repo) -> Callable[[str, str], str]:
    """Write a file in the source repository and commit it.

    Returns:
        Callable taking (relative_path, content) and returning the new source sha
    """

    def _commit(relative_path: str, content: str) -> str:
        return _commit_source_change(source_repo, relative_path, content)

    return _commit


@pytest.fixture
def remote_files(remote_repo: git.Repo) -> Callable[[str], set[str]]:
    """Return a function listing the files at the tip of a remote branch."""

    def _files(branch: str) -> set[str]:
        commit = remote_repo.commit(branch)
        return {item.path for item in commit.tree.traverse() if item.type == "blob"}

    return _files
