"""Tests for the hosting clients (gh CLI and REST API)."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import Mock, patch

import pytest
import requests

from ralph_stack.config import HostingConfig
from ralph_stack.hosting import (
    CiStatus,
    GhCliClient,
    HostingError,
    MergeError,
    MergeFailureKind,
    RestApiClient,
    classify_check_states,
    classify_merge_failure,
    create_client,
    merge_failure_remedy,
    parse_pr_number,
    repo_from_remote_url,
)
from ralph_stack.subprocess_helper import CommandNotFoundError, SubprocessResult


def _result(returncode=0, stdout="", stderr=""):
    return SubprocessResult(returncode=returncode, stdout=stdout, stderr=stderr, cmd_str="gh")


class TestClassification:
    @pytest.mark.parametrize(
        "states, expected",
        [
            ([], CiStatus.NO_CHECKS),
            (["SUCCESS", "SKIPPED", "NEUTRAL"], CiStatus.PASS),
            (["success"], CiStatus.PASS),
            (["SUCCESS", "PENDING"], CiStatus.PENDING),
            (["QUEUED"], CiStatus.PENDING),
            (["IN_PROGRESS", "FAILURE"], CiStatus.FAIL),
            (["CANCELLED"], CiStatus.FAIL),
            (["TIMED_OUT", "SUCCESS"], CiStatus.FAIL),
            (["ACTION_REQUIRED"], CiStatus.FAIL),
            (["SUCCESS", "SOMETHING_NEW"], CiStatus.UNKNOWN),
        ],
    )
    def test_classify_check_states(self, states, expected):
        assert classify_check_states(states) is expected

    @pytest.mark.parametrize(
        "output, kind",
        [
            ("Pull request is not mergeable: the merge commit cannot be cleanly created (CONFLICT)", MergeFailureKind.CONFLICT),
            ("Required status check \"test\" is expected", MergeFailureKind.CHECKS),
            ("At least 1 approving review is required", MergeFailureKind.REVIEW),
            ("Protected branch update failed", MergeFailureKind.PROTECTED),
            ("HTTP 502: bad gateway", MergeFailureKind.OTHER),
            ("", MergeFailureKind.OTHER),
        ],
    )
    def test_classify_merge_failure(self, output, kind):
        assert classify_merge_failure(output) is kind

    def test_conflict_remedy_names_the_pr(self):
        lines = merge_failure_remedy(MergeFailureKind.CONFLICT, 7)
        assert "gh pr checkout 7" in lines

    def test_other_remedy_echoes_output(self):
        assert merge_failure_remedy(MergeFailureKind.OTHER, 7, "weird\nfailure") == ["weird", "failure"]


@pytest.mark.parametrize(
    "url, number",
    [
        ("https://github.com/acme/web/pull/42", 42),
        ("https://github.com/acme/web/pull/42\n", 42),
        ("no number here", None),
    ],
)
def test_parse_pr_number(url, number):
    assert parse_pr_number(url) == number


@pytest.mark.parametrize(
    "url, repo",
    [
        ("git@github.com:acme/web.git", "acme/web"),
        ("https://github.com/acme/web.git", "acme/web"),
        ("https://github.com/acme/web", "acme/web"),
        ("ssh://git@github.com/acme/web.git", "acme/web"),
        ("/tmp/origin.git", ""),
    ],
)
def test_repo_from_remote_url(url, repo):
    assert repo_from_remote_url(url) == repo


class TestGhCliClient:
    def test_list_open_prs(self, tmp_path):
        payload = [
            {"number": 3, "title": "feat(C-1): c", "headRefName": "feat/C-1", "url": "u3"},
            {"number": 1, "title": "feat(A-1): a", "headRefName": "feat/A-1", "url": "u1"},
        ]
        with patch("ralph_stack.hosting.run_subprocess") as mock_run:
            mock_run.return_value = _result(stdout=json.dumps(payload))
            prs = GhCliClient(tmp_path).list_open_prs("main")

        argv = mock_run.call_args[0][0]
        assert argv[:3] == ["gh", "pr", "list"]
        assert "--base" in argv and "main" in argv
        assert [p.number for p in prs] == [3, 1]
        assert prs[1].head_ref == "feat/A-1"

    def test_list_open_prs_failure(self, tmp_path):
        with patch("ralph_stack.hosting.run_subprocess") as mock_run:
            mock_run.return_value = _result(returncode=1, stderr="not logged in")
            with pytest.raises(HostingError, match="not logged in"):
                GhCliClient(tmp_path).list_open_prs("main")

    def test_create_pr_parses_number_from_url(self, tmp_path):
        with patch("ralph_stack.hosting.run_subprocess") as mock_run:
            mock_run.return_value = _result(
                stdout="Creating pull request...\nhttps://github.com/acme/web/pull/12\n"
            )
            pr = GhCliClient(tmp_path).create_pr("main", "feat/A-1", "feat(A-1): a", "body")

        assert pr.number == 12
        assert pr.url == "https://github.com/acme/web/pull/12"
        argv = mock_run.call_args[0][0]
        assert argv[argv.index("--head") + 1] == "feat/A-1"
        assert argv[argv.index("--body") + 1] == "body"

    def test_merge_pr_failure_carries_output(self, tmp_path):
        with patch("ralph_stack.hosting.run_subprocess") as mock_run:
            mock_run.return_value = _result(returncode=1, stderr="merge conflict")
            with pytest.raises(MergeError) as exc:
                GhCliClient(tmp_path).merge_pr(5)

        assert exc.value.number == 5
        assert "merge conflict" in exc.value.output
        argv = mock_run.call_args[0][0]
        assert argv == ["gh", "pr", "merge", "5", "--squash", "--delete-branch"]

    def test_check_status_reads_json_even_on_nonzero_exit(self, tmp_path):
        with patch("ralph_stack.hosting.run_subprocess") as mock_run:
            mock_run.return_value = _result(
                returncode=8,
                stdout=json.dumps([{"name": "test", "state": "PENDING"}, {"name": "lint", "state": "SUCCESS"}]),
            )
            assert GhCliClient(tmp_path).check_status(4) is CiStatus.PENDING

    def test_check_status_no_checks(self, tmp_path):
        with patch("ralph_stack.hosting.run_subprocess") as mock_run:
            mock_run.return_value = _result(returncode=1, stderr="no checks reported on the 'feat/x' branch")
            assert GhCliClient(tmp_path).check_status(4) is CiStatus.NO_CHECKS

    def test_check_status_unknown_on_error(self, tmp_path):
        with patch("ralph_stack.hosting.run_subprocess") as mock_run:
            mock_run.side_effect = CommandNotFoundError("Command not found: gh")
            assert GhCliClient(tmp_path).check_status(4) is CiStatus.UNKNOWN

    def test_validate(self, tmp_path):
        with patch("ralph_stack.hosting.run_subprocess") as mock_run:
            mock_run.return_value = _result(returncode=0)
            assert GhCliClient(tmp_path).validate() is True
            mock_run.side_effect = CommandNotFoundError("Command not found: gh")
            assert GhCliClient(tmp_path).validate() is False


def _response(status=200, body=None):
    resp = Mock()
    resp.status_code = status
    resp.text = json.dumps(body) if body is not None else ""
    resp.json.return_value = body
    return resp


class TestRestApiClient:
    def test_requires_token(self, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        with pytest.raises(HostingError, match="token not found"):
            RestApiClient("acme/web")

    def test_repr_hides_token(self):
        client = RestApiClient("acme/web", token="ghp_secret")
        assert "ghp_secret" not in repr(client)

    def test_list_open_prs(self):
        client = RestApiClient("acme/web", token="t")
        body = [{"number": 9, "title": "x", "head": {"ref": "feat/X-1"}, "html_url": "u"}]
        with patch("ralph_stack.hosting.requests.request", return_value=_response(body=body)) as req:
            prs = client.list_open_prs("main")

        assert prs[0].number == 9
        assert prs[0].head_ref == "feat/X-1"
        method, url = req.call_args[0]
        assert method == "GET"
        assert url.endswith("/repos/acme/web/pulls")
        assert req.call_args[1]["params"]["base"] == "main"
        assert req.call_args[1]["headers"]["Authorization"] == "Bearer t"

    def test_list_open_prs_follows_pages(self):
        client = RestApiClient("acme/web", token="t")

        def page(start, count):
            return [
                {"number": n, "title": f"PR {n}", "head": {"ref": f"feat/S-{n}"}, "html_url": "u"}
                for n in range(start, start + count)
            ]

        responses = [_response(body=page(1, 100)), _response(body=page(101, 3))]
        with patch("ralph_stack.hosting.requests.request", side_effect=responses) as req:
            prs = client.list_open_prs("main")

        assert len(prs) == 103
        assert prs[-1].number == 103
        assert [c[1]["params"]["page"] for c in req.call_args_list] == [1, 2]

    def test_list_open_prs_stops_at_limit(self):
        client = RestApiClient("acme/web", token="t")
        full = [{"number": n, "head": {"ref": "b"}} for n in range(1, 101)]
        with patch("ralph_stack.hosting.requests.request", return_value=_response(body=full)) as req:
            prs = client.list_open_prs("main")

        assert len(prs) == 200
        assert req.call_count == 2

    def test_error_status_raises(self):
        client = RestApiClient("acme/web", token="t")
        with patch(
            "ralph_stack.hosting.requests.request",
            return_value=_response(status=422, body={"message": "Validation Failed"}),
        ):
            with pytest.raises(HostingError, match="Validation Failed"):
                client.create_pr("main", "feat/X-1", "t", "b")

    def test_timeout_raises_hosting_error(self):
        client = RestApiClient("acme/web", token="t")
        with patch("ralph_stack.hosting.requests.request", side_effect=requests.exceptions.Timeout()):
            with pytest.raises(HostingError, match="timed out"):
                client.list_open_prs("main")

    def test_merge_squashes_and_deletes_branch(self):
        client = RestApiClient("acme/web", token="t")
        responses = [
            _response(body={"number": 9, "head": {"ref": "feat/X-1", "sha": "abc"}}),
            _response(body={"merged": True}),
            _response(status=204),
        ]
        with patch("ralph_stack.hosting.requests.request", side_effect=responses) as req:
            client.merge_pr(9)

        calls = [(c[0][0], c[0][1]) for c in req.call_args_list]
        assert calls[1][0] == "PUT"
        assert calls[1][1].endswith("/pulls/9/merge")
        assert req.call_args_list[1][1]["json"] == {"merge_method": "squash"}
        assert calls[2] == ("DELETE", "https://api.github.com/repos/acme/web/git/refs/heads/feat/X-1")

    def test_merge_failure_is_merge_error(self):
        client = RestApiClient("acme/web", token="t")
        responses = [
            _response(body={"number": 9, "head": {"ref": "feat/X-1"}}),
            _response(status=405, body={"message": "Pull Request is not mergeable"}),
        ]
        with patch("ralph_stack.hosting.requests.request", side_effect=responses):
            with pytest.raises(MergeError, match="not mergeable"):
                client.merge_pr(9)

    def test_check_status_combines_runs_and_statuses(self):
        client = RestApiClient("acme/web", token="t")
        responses = [
            _response(body={"head": {"sha": "abc"}}),
            _response(body={"check_runs": [{"status": "completed", "conclusion": "success"}]}),
            _response(body={"statuses": [{"state": "pending"}]}),
        ]
        with patch("ralph_stack.hosting.requests.request", side_effect=responses):
            assert client.check_status(9) is CiStatus.PENDING


class TestCreateClient:
    def test_gh_cli_backend(self, tmp_path):
        client = create_client(HostingConfig(), tmp_path)
        assert isinstance(client, GhCliClient)

    def test_token_backend_derives_repo_from_remote(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "t")
        client = create_client(HostingConfig(backend="token"), tmp_path, "git@github.com:acme/web.git")
        assert isinstance(client, RestApiClient)
        assert client.repo == "acme/web"

    def test_token_backend_without_repo(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "t")
        with pytest.raises(HostingError, match="hosting.repo"):
            create_client(HostingConfig(backend="token"), tmp_path, "/srv/git/web.git")
