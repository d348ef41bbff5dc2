"""
Tests for building events from payload files and local git state.
"""

import json
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from pipewright.errors import ConfigurationError
from pipewright.events import event_from_git, event_from_payload, load_event, parse_kind, repository_name
from pipewright.model import EventKind


class TestParseKind:
    @pytest.mark.parametrize(
        "value, kind",
        [
            ("push", EventKind.PUSH),
            ("pull-request-opened", EventKind.PULL_REQUEST_OPENED),
            ("pull_request", EventKind.PULL_REQUEST_OPENED),
            ("synchronize", EventKind.PULL_REQUEST_SYNCHRONIZED),
            ("workflow_dispatch", EventKind.MANUAL_DISPATCH),
        ],
    )
    def test_known_kinds(self, value, kind):
        assert parse_kind(value) == kind

    def test_unknown_kind(self):
        with pytest.raises(ConfigurationError, match="unknown event kind"):
            parse_kind("tag")


class TestRepositoryName:
    @pytest.mark.parametrize(
        "url",
        [
            "git@github.com:acme/site.git",
            "https://github.com/acme/site.git",
            "https://github.com/acme/site/",
            "ssh://git@git.example.test:2222/acme/site.git",
        ],
    )
    def test_remote_urls(self, url):
        assert repository_name(url, Path("/work/checkout")) == "acme/site"

    def test_falls_back_to_directory(self):
        assert repository_name(None, Path("/work/checkout")) == "checkout"


class TestPayload:
    """Tests for JSON event payloads."""

    def test_full_payload(self, tmp_path):
        path = tmp_path / "event.json"
        path.write_text(
            json.dumps(
                {
                    "kind": "pull_request",
                    "ref": "feature/login",
                    "changed_paths": ["src/login.js"],
                    "commit_message": "Add login",
                    "sha": "abc123",
                    "repository": "acme/site",
                    "change_request": "17",
                }
            )
        )

        event = load_event(path)

        assert event.kind == EventKind.PULL_REQUEST_OPENED
        assert event.changed_paths == ("src/login.js",)
        assert event.change_request == 17
        assert event.inputs == {}

    def test_missing_fields(self):
        with pytest.raises(ConfigurationError, match="kind"):
            event_from_payload({"ref": "main"})

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "event.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError, match="cannot read event payload"):
            load_event(path)

    def test_payload_must_be_object(self, tmp_path):
        path = tmp_path / "event.json"
        path.write_text("[]")

        with pytest.raises(ConfigurationError, match="JSON object"):
            load_event(path)


class TestEventFromGit:
    """Tests for events describing the local checkout (git calls mocked)."""

    @patch("pipewright.events.get_remote_url", return_value="git@github.com:acme/site.git")
    @patch("pipewright.events.head_commit_message", return_value="Fix header [skip ci]")
    @patch("pipewright.events.current_branch", return_value="main")
    @patch("pipewright.events.head_sha", return_value="f00d")
    @patch("pipewright.events.changed_files", return_value=["src/a.js", "docs/b.md"])
    @patch("pipewright.events.merge_base", return_value="base-sha")
    @patch("pipewright.events.is_dirty", return_value=False)
    @patch("pipewright.events.repo_root", return_value=Path("/work/site"))
    def test_clean_checkout(self, _root, _dirty, mock_merge_base, mock_changed, *_):
        event = event_from_git(EventKind.PUSH, compare_ref="origin/main")

        assert event.ref == "main"
        assert event.sha == "f00d"
        assert event.repository == "acme/site"
        assert event.commit_message == "Fix header [skip ci]"
        assert event.changed_paths == ("src/a.js", "docs/b.md")
        mock_merge_base.assert_called_once_with("origin/main", Path("/work/site"))
        mock_changed.assert_called_once_with("base-sha", "HEAD", Path("/work/site"))

    @patch("pipewright.events.get_remote_url", return_value=None)
    @patch("pipewright.events.head_commit_message", return_value="")
    @patch("pipewright.events.current_branch", return_value="feature/x")
    @patch("pipewright.events.uncommitted_files", return_value=["notes.md"])
    @patch("pipewright.events.is_dirty", return_value=True)
    @patch("pipewright.events.repo_root", return_value=Path("/work/site"))
    def test_dirty_checkout_has_no_sha(self, *_):
        event = event_from_git(EventKind.PUSH, ref="override")

        assert event.sha is None
        assert event.ref == "override"
        assert event.changed_paths == ("notes.md",)
        assert event.repository == "site"

    @patch("pipewright.events.get_remote_url", return_value=None)
    @patch("pipewright.events.head_commit_message", return_value="initial")
    @patch("pipewright.events.current_branch", return_value="main")
    @patch("pipewright.events.head_sha", return_value="f00d")
    @patch("pipewright.events.tracked_files", return_value=["README.md"])
    @patch("pipewright.events.changed_files", side_effect=subprocess.CalledProcessError(128, "git diff"))
    @patch("pipewright.events.merge_base", side_effect=subprocess.CalledProcessError(1, "git merge-base"))
    @patch("pipewright.events.is_dirty", return_value=False)
    @patch("pipewright.events.repo_root", return_value=Path("/work/site"))
    def test_first_commit_uses_tracked_files(self, _root, _dirty, _merge_base, mock_changed, *_):
        event = event_from_git(EventKind.PUSH)

        assert event.changed_paths == ("README.md",)
        mock_changed.assert_called_once_with("HEAD~1", "HEAD", Path("/work/site"))
