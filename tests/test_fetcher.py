"""Tests for URL parsing and the git clone wrapper."""

import os
import shutil
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from repolens.errors import CloneFailure
from repolens.fetcher import RepositoryFetcher, parse_repo_url


def _completed(returncode=0, stderr=""):
    result = MagicMock()
    result.returncode = returncode
    result.stderr = stderr
    result.stdout = ""
    return result


class TestParseRepoUrl:
    def test_github_https(self):
        info = parse_repo_url("https://github.com/pallets/flask.git")
        assert (info.platform, info.owner, info.repo) == ("github", "pallets", "flask")

    def test_github_ssh(self):
        info = parse_repo_url("git@github.com:pallets/click.git")
        assert (info.platform, info.owner, info.repo) == ("github", "pallets", "click")

    def test_gitlab_and_bitbucket(self):
        assert parse_repo_url("https://gitlab.com/group/project").platform == "gitlab"
        assert parse_repo_url("https://bitbucket.org/team/repo").platform == "bitbucket"

    def test_other_host(self):
        info = parse_repo_url("https://git.example.com/x/y.git")
        assert info.platform == "other"
        assert info.owner is None
        assert info.to_dict() == {"url": "https://git.example.com/x/y.git", "platform": "other"}


class TestClone:
    @patch("repolens.fetcher.subprocess.run")
    def test_command_line(self, mock_run, tmp_path):
        mock_run.return_value = _completed()
        dest = tmp_path / "ws" / "repo"
        result = RepositoryFetcher(timeout=30).clone("https://github.com/a/b", dest, "main", 1)

        cmd = mock_run.call_args[0][0]
        assert cmd == ["git", "clone", "--depth", "1", "--branch", "main", "https://github.com/a/b", str(dest)]
        assert mock_run.call_args.kwargs["timeout"] == 30
        assert mock_run.call_args.kwargs["env"]["GIT_TERMINAL_PROMPT"] == "0"
        assert result.branch == "main"
        assert result.used_fallback is False

    @patch("repolens.fetcher.subprocess.run")
    def test_branch_fallback(self, mock_run, tmp_path):
        mock_run.side_effect = [
            _completed(128, "fatal: Remote branch nope not found in upstream origin"),
            _completed(),
        ]
        result = RepositoryFetcher().clone("https://github.com/a/b", tmp_path / "repo", "nope", 1)

        assert mock_run.call_count == 2
        retry_cmd = mock_run.call_args_list[1][0][0]
        assert "--branch" not in retry_cmd
        assert result.used_fallback is True
        assert result.branch is None

    @patch("repolens.fetcher.subprocess.run")
    def test_both_attempts_fail(self, mock_run, tmp_path):
        mock_run.return_value = _completed(128, "fatal: repository not found")
        with pytest.raises(CloneFailure) as exc:
            RepositoryFetcher().clone("https://github.com/a/missing", tmp_path / "repo", "main", 1)
        assert mock_run.call_count == 2
        assert exc.value.message == "Failed to clone repository"
        assert "repository not found" in exc.value.diagnostic

    @patch("repolens.fetcher.subprocess.run")
    def test_no_branch_means_no_retry(self, mock_run, tmp_path):
        mock_run.return_value = _completed(128, "fatal: nope")
        with pytest.raises(CloneFailure):
            RepositoryFetcher().clone("https://github.com/a/b", tmp_path / "repo", None, 1)
        assert mock_run.call_count == 1

    @patch("repolens.fetcher.subprocess.run")
    def test_timeout_counts_as_failure(self, mock_run, tmp_path):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="git", timeout=1)
        with pytest.raises(CloneFailure) as exc:
            RepositoryFetcher(timeout=1).clone("https://github.com/a/b", tmp_path / "repo", "main", 1)
        assert "timed out" in exc.value.diagnostic

    @patch("repolens.fetcher.subprocess.run")
    def test_git_missing(self, mock_run, tmp_path):
        mock_run.side_effect = FileNotFoundError("git")
        with pytest.raises(CloneFailure) as exc:
            RepositoryFetcher().clone("https://github.com/a/b", tmp_path / "repo")
        assert "not installed" in exc.value.diagnostic

    @patch("repolens.fetcher.subprocess.run")
    def test_leftover_directory_cleared_before_retry(self, mock_run, tmp_path):
        dest = tmp_path / "repo"

        def first_attempt_leaves_junk(cmd, **kwargs):
            if "--branch" in cmd:
                dest.mkdir()
                (dest / "junk").write_text("x")
                return _completed(128, "fatal: early EOF")
            assert not dest.exists()
            return _completed()

        mock_run.side_effect = first_attempt_leaves_junk
        RepositoryFetcher().clone("https://github.com/a/b", dest, "main", 1)


class TestReachability:
    @patch("repolens.fetcher.subprocess.run")
    def test_reachable(self, mock_run):
        mock_run.return_value = _completed()
        assert RepositoryFetcher().is_reachable("https://github.com/a/b") is True
        assert mock_run.call_args[0][0][:3] == ["git", "ls-remote", "--heads"]

    @patch("repolens.fetcher.subprocess.run")
    def test_unreachable(self, mock_run):
        mock_run.return_value = _completed(128)
        assert RepositoryFetcher().is_reachable("https://github.com/a/b") is False


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestRealGit:
    """Clone a throwaway local repository through the file:// transport."""

    @pytest.fixture
    def origin(self, tmp_path):
        origin = tmp_path / "origin"
        origin.mkdir()
        (origin / "hello.py").write_text("print('hello')\n")
        env = dict(os.environ, GIT_AUTHOR_NAME="t", GIT_AUTHOR_EMAIL="t@example.com",
                   GIT_COMMITTER_NAME="t", GIT_COMMITTER_EMAIL="t@example.com", HOME=str(tmp_path))
        for cmd in (["git", "init", "-q"], ["git", "symbolic-ref", "HEAD", "refs/heads/main"],
                    ["git", "add", "."], ["git", "commit", "-q", "-m", "init"]):
            subprocess.run(cmd, cwd=origin, check=True, env=env, capture_output=True)
        return origin

    def test_clone_and_fallback(self, origin, tmp_path):
        fetcher = RepositoryFetcher(timeout=60)
        url = origin.as_uri()

        result = fetcher.clone(url, tmp_path / "one", "main", 1)
        assert (result.path / "hello.py").exists()

        result = fetcher.clone(url, tmp_path / "two", "does-not-exist", 1)
        assert result.used_fallback is True
        assert (result.path / "hello.py").exists()
