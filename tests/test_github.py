"""Tests for the GitHub metadata client."""

from unittest.mock import MagicMock, patch

import pytest

from repolens.github import GitHubClient, GitHubError


def _response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body or {}
    resp.text = ""
    return resp


class TestGitHubClient:
    def test_token_header(self):
        client = GitHubClient(token="secret")
        assert client._client.headers["Authorization"] == "Bearer secret"

    def test_no_token_header(self):
        assert "Authorization" not in GitHubClient()._client.headers

    @patch("httpx.Client.get")
    def test_metadata(self, mock_get):
        mock_get.return_value = _response(200, {
            "name": "flask",
            "full_name": "pallets/flask",
            "description": "The Python micro framework",
            "stargazers_count": 66000,
            "forks_count": 16000,
            "open_issues_count": 5,
            "language": "Python",
            "size": 10000,
            "default_branch": "main",
            "created_at": "2010-04-06T11:11:59Z",
            "updated_at": "2026-01-01T00:00:00Z",
        })
        metadata = GitHubClient(api_url="https://api.example.com/").repository_metadata("pallets", "flask")

        assert mock_get.call_args[0][0] == "https://api.example.com/repos/pallets/flask"
        assert metadata["stars"] == 66000
        assert metadata["open_issues"] == 5
        assert metadata["default_branch"] == "main"

    @patch("httpx.Client.get")
    def test_missing_repository(self, mock_get):
        mock_get.return_value = _response(404)
        assert GitHubClient().repository_metadata("a", "b") is None

    @patch("httpx.Client.get")
    def test_rate_limited(self, mock_get):
        mock_get.return_value = _response(403)
        with pytest.raises(GitHubError, match="403"):
            GitHubClient().repository_metadata("a", "b")

    @patch("httpx.Client.get")
    def test_unreachable(self, mock_get):
        from httpx import ConnectError

        mock_get.side_effect = ConnectError("refused")
        with pytest.raises(GitHubError):
            GitHubClient().repository_metadata("a", "b")
