"""
Top-level pytest conftest.py -- shared fixtures.

Provides:
    has_git       - session-scoped check for a git binary on PATH
    requires_git  - skip the test when git is missing
    local_repo    - temporary directory with a deterministic git repo
    bare_remote   - bare repository cloned from local_repo, usable as a remote
    fake_git      - factory writing a shell script that stands in for git
"""

import os
import shutil
import stat
import subprocess
import textwrap

import pytest

GIT_IDENTITY_ENV = {
    "GIT_AUTHOR_NAME": "Test User",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test User",
    "GIT_COMMITTER_EMAIL": "test@example.com",
}


@pytest.fixture(scope="session")
def has_git():
    """Return True if the ``git`` command is on PATH."""
    return shutil.which("git") is not None


@pytest.fixture
def requires_git(has_git):
    """Skip the test when git is not installed."""
    if not has_git:
        pytest.skip("git is not available")


@pytest.fixture
def local_repo(tmp_path, requires_git):
    """Create a temporary directory containing a deterministic git repo.

    The repo has ``main`` as its default branch, a single ``README.md``,
    and one initial commit.  Yields the ``pathlib.Path`` to the repo root.
    """
    repo = tmp_path / "repo"
    repo.mkdir()

    env = {**os.environ, **GIT_IDENTITY_ENV}
    run_opts = {"cwd": str(repo), "env": env, "capture_output": True, "text": True}

    subprocess.run(["git", "init", "-b", "main"], check=True, **run_opts)
    (repo / "README.md").write_text("# Test Repository\n")
    subprocess.run(["git", "add", "README.md"], check=True, **run_opts)
    subprocess.run(
        ["git", "commit", "-m", "Initial commit"], check=True, **run_opts
    )

    yield repo


@pytest.fixture
def bare_remote(tmp_path, local_repo):
    """Bare clone of ``local_repo``, registered in it as ``origin``."""
    remote = tmp_path / "remote.git"
    subprocess.run(
        ["git", "clone", "--bare", str(local_repo), str(remote)],
        check=True, capture_output=True, text=True,
    )
    subprocess.run(
        ["git", "remote", "add", "origin", str(remote)],
        cwd=str(local_repo), check=True, capture_output=True, text=True,
    )
    return remote


@pytest.fixture
def fake_git(tmp_path):
    """Return a factory that writes an executable stand-in for git.

    Usage::

        binary = fake_git('printf "hello\\n"; exit 3')
        executor = GitExecutor(git_binary=binary)
    """
    counter = {"n": 0}

    def _make(body: str) -> str:
        counter["n"] += 1
        path = tmp_path / f"fake-git-{counter['n']}"
        path.write_text("#!/bin/sh\n" + textwrap.dedent(body).strip() + "\n", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make
