"""Tests for the CLI."""

import base64
import json
import logging
import os
import shutil
import signal
import subprocess
import threading

import pytest
from click.testing import CliRunner

from pipeaudit.cli import EXIT_ERROR, EXIT_FINDINGS, EXIT_INTERRUPT, EXIT_OK, _interrupt_handler, cli
from pipeaudit.providers.local import LocalOrganization


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def insecure_copy(tmp_path, insecure_repo_path):
    """Writable copy of the insecure repository, for tests that add a config file."""
    target = tmp_path / "insecure"
    shutil.copytree(insecure_repo_path, target)
    return target


# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

class TestExitCodes:
    def test_exit_1_on_findings(self, runner, insecure_repo_path):
        result = runner.invoke(cli, ["analyze-local", insecure_repo_path])
        assert result.exit_code == EXIT_FINDINGS

    def test_exit_0_on_clean(self, runner, secure_repo_path):
        result = runner.invoke(cli, ["analyze-local", secure_repo_path])
        assert result.exit_code == EXIT_OK
        assert "No security issues found" in result.output

    def test_exit_2_on_bad_path(self, runner):
        result = runner.invoke(cli, ["analyze-local", "/nonexistent/path"])
        assert result.exit_code == EXIT_ERROR
        assert "Error" in result.output

    def test_exit_2_on_invalid_config(self, runner, insecure_copy):
        cfg = insecure_copy / ".pipeaudit.yml"
        cfg.write_text("severity: urgent\n")
        result = runner.invoke(cli, ["analyze-local", str(insecure_copy)])
        assert result.exit_code == EXIT_ERROR
        assert "Invalid severity" in result.output

    def test_empty_directory(self, runner, tmp_path):
        result = runner.invoke(cli, ["analyze-local", str(tmp_path)])
        assert result.exit_code == EXIT_OK
        assert "0 pipeline(s) scanned" in result.output

    def test_unparsable_file_is_reported_not_fatal(self, runner, tmp_path):
        workflows = tmp_path / ".github" / "workflows"
        workflows.mkdir(parents=True)
        (workflows / "bad.yml").write_text("jobs: [unclosed\n")
        result = runner.invoke(cli, ["analyze-local", str(tmp_path)])
        assert result.exit_code == EXIT_OK
        assert "UnparsableDocument" in result.output


# ---------------------------------------------------------------------------
# Output formats
# ---------------------------------------------------------------------------

class TestOutputFormats:
    def test_console_output(self, runner, insecure_repo_path):
        result = runner.invoke(cli, ["analyze-local", insecure_repo_path])
        assert "Unpinned reference" in result.output
        assert "Repository: insecure" in result.output

    def test_json_output(self, runner, insecure_repo_path):
        result = runner.invoke(cli, ["analyze-local", insecure_repo_path, "--format", "json"])
        parsed = json.loads(result.output)
        assert parsed["total"] == 7
        assert parsed["repositories"][0]["repository"] == "insecure"

    def test_sarif_output(self, runner, insecure_repo_path):
        result = runner.invoke(cli, ["analyze-local", insecure_repo_path, "--format", "sarif"])
        parsed = json.loads(result.output)
        assert parsed["version"] == "2.1.0"
        assert len(parsed["runs"][0]["results"]) == 7

    def test_json_output_is_stable(self, runner, insecure_repo_path):
        first = runner.invoke(cli, ["analyze-local", insecure_repo_path, "--format", "json"])
        second = runner.invoke(cli, ["analyze-local", insecure_repo_path, "--format", "json"])
        assert first.output == second.output


# ---------------------------------------------------------------------------
# Organization scan
# ---------------------------------------------------------------------------

class TestAnalyzeOrg:
    def test_scans_every_repository(self, runner, repos_dir):
        result = runner.invoke(cli, ["analyze-org", repos_dir, "--threads", "3", "--format", "json"])
        assert result.exit_code == EXIT_FINDINGS
        parsed = json.loads(result.output)
        assert [r["repository"] for r in parsed["repositories"]] == ["gitlab", "insecure", "secure"]
        assert parsed["total"] == 15

    def test_invalid_threads(self, runner, repos_dir):
        result = runner.invoke(cli, ["analyze-org", repos_dir, "--threads", "0"])
        assert result.exit_code == EXIT_ERROR

    def test_bad_path(self, runner):
        result = runner.invoke(cli, ["analyze-org", "/nonexistent/org"])
        assert result.exit_code == EXIT_ERROR


# ---------------------------------------------------------------------------
# Severity filter
# ---------------------------------------------------------------------------

class TestSeverityFilter:
    def test_filter_critical_only(self, runner, insecure_repo_path):
        result = runner.invoke(cli, [
            "analyze-local", insecure_repo_path, "--severity", "critical", "--format", "json",
        ])
        findings = json.loads(result.output)["repositories"][0]["findings"]
        assert len(findings) == 3
        assert all(f["severity"] == "critical" for f in findings)

    def test_filter_high_and_above(self, runner, insecure_repo_path):
        result = runner.invoke(cli, [
            "analyze-local", insecure_repo_path, "--severity", "high", "--format", "json",
        ])
        findings = json.loads(result.output)["repositories"][0]["findings"]
        assert {f["severity"] for f in findings} == {"high", "critical"}


# ---------------------------------------------------------------------------
# Verbose flag
# ---------------------------------------------------------------------------

class TestVerbose:
    def test_verbose_flag_accepted(self, runner, secure_repo_path):
        result = runner.invoke(cli, ["-v", "analyze-local", secure_repo_path])
        assert result.exit_code == EXIT_OK


# ---------------------------------------------------------------------------
# Config file integration
# ---------------------------------------------------------------------------

class TestConfigIntegration:
    def test_ignore_rules_from_config(self, runner, insecure_copy):
        (insecure_copy / ".pipeaudit.yml").write_text(
            "ignore_rules:\n"
            "  - unpinned_action\n"
            "  - self_hosted_runner\n"
            "  - untrusted_checkout_exec\n"
            "  - injection\n"
            "  - default_permissions_on_risky_events\n"
        )
        result = runner.invoke(cli, ["analyze-local", str(insecure_copy)])
        assert result.exit_code == EXIT_OK
        assert "No security issues found" in result.output

    def test_severity_from_explicit_config(self, runner, insecure_repo_path, tmp_path):
        cfg = tmp_path / "custom.yml"
        cfg.write_text("severity: critical\n")
        result = runner.invoke(cli, [
            "analyze-local", insecure_repo_path, "--config", str(cfg), "--format", "json",
        ])
        parsed = json.loads(result.output)
        assert parsed["total"] == 3

    def test_cli_severity_overrides_config(self, runner, insecure_copy):
        (insecure_copy / ".pipeaudit.yml").write_text("severity: critical\n")
        result = runner.invoke(cli, [
            "analyze-local", str(insecure_copy), "--severity", "low", "--format", "json",
        ])
        assert json.loads(result.output)["total"] == 7

    def test_exclude_from_config(self, runner, insecure_copy):
        (insecure_copy / ".pipeaudit.yml").write_text("exclude:\n  - '.github/workflows/pr.yml'\n")
        result = runner.invoke(cli, ["analyze-local", str(insecure_copy), "--format", "json"])
        parsed = json.loads(result.output)
        assert parsed["repositories"][0]["pipelines"] == 1
        assert parsed["total"] == 1


# ---------------------------------------------------------------------------
# Remote repository
# ---------------------------------------------------------------------------

class TestAnalyzeRepo:
    @pytest.fixture
    def clones(self, monkeypatch, insecure_repo_path):
        """Replace 'git clone' with a copy of the insecure fixture; records each call."""
        calls = []

        def fake_run(cmd, **kwargs):
            calls.append((cmd, kwargs.get("env") or {}))
            shutil.copytree(insecure_repo_path, cmd[-1], dirs_exist_ok=True)
            return subprocess.CompletedProcess(cmd, 0)

        monkeypatch.setattr(subprocess, "run", fake_run)
        return calls

    def test_slug_defaults_to_github(self, runner, clones):
        result = runner.invoke(cli, ["analyze-repo", "org/insecure", "--format", "json"], env={"GH_TOKEN": None})
        assert result.exit_code == EXIT_FINDINGS
        cmd, env = clones[0]
        assert cmd[-2] == "https://github.com/org/insecure.git"
        assert "GIT_CONFIG_VALUE_0" not in env
        assert json.loads(result.output)["repositories"][0]["repository"] == "insecure"

    def test_gitlab_base_url_and_ref(self, runner, clones):
        result = runner.invoke(cli, [
            "analyze-repo", "group/insecure", "--scm", "gitlab",
            "--scm-base-url", "https://gitlab.example.com/", "--ref", "main",
        ])
        assert result.exit_code == EXIT_FINDINGS
        cmd, _ = clones[0]
        assert cmd[-3:] == ["main", "https://gitlab.example.com/group/insecure.git", cmd[-1]]

    def test_clone_url_is_used_verbatim(self, runner, clones):
        runner.invoke(cli, ["analyze-repo", "git@example.com:org/insecure.git"])
        assert clones[0][0][-2] == "git@example.com:org/insecure.git"

    def test_token_from_environment(self, runner, clones, caplog):
        caplog.set_level(logging.DEBUG)
        result = runner.invoke(cli, ["analyze-repo", "org/insecure"], env={"GH_TOKEN": "s3cr3t-token"})
        assert result.exit_code == EXIT_FINDINGS
        cmd, env = clones[0]
        expected = base64.b64encode(b"x-access-token:s3cr3t-token").decode()
        assert env["GIT_CONFIG_KEY_0"] == "http.extraHeader"
        assert env["GIT_CONFIG_VALUE_0"] == f"Authorization: Basic {expected}"
        assert not any("s3cr3t" in part for part in cmd)
        assert "s3cr3t" not in caplog.text
        assert "s3cr3t" not in result.output

    def test_token_option_overrides_environment(self, runner, clones):
        runner.invoke(cli, ["analyze-repo", "group/insecure", "--scm", "gitlab", "--token", "abc"],
                      env={"GH_TOKEN": "ignored"})
        expected = base64.b64encode(b"oauth2:abc").decode()
        assert clones[0][1]["GIT_CONFIG_VALUE_0"] == f"Authorization: Basic {expected}"

    def test_invalid_slug(self, runner, clones):
        result = runner.invoke(cli, ["analyze-repo", "just-a-name"])
        assert result.exit_code == EXIT_ERROR
        assert clones == []

    def test_clone_failure(self, runner, monkeypatch):
        def fake_run(cmd, **kwargs):
            raise subprocess.CalledProcessError(128, cmd, stderr="fatal: Authentication failed\n")

        monkeypatch.setattr(subprocess, "run", fake_run)
        result = runner.invoke(cli, ["analyze-repo", "org/private"])
        assert result.exit_code == EXIT_ERROR
        assert "Authentication failed" in result.output


# ---------------------------------------------------------------------------
# Interrupts
# ---------------------------------------------------------------------------

class _InterruptedOrganization(LocalOrganization):
    """Delivers SIGINT to the running command once the first repository is dispatched."""

    def repositories(self, cancel):
        for n, repository in enumerate(super().repositories(cancel)):
            if n == 1:
                signal.getsignal(signal.SIGINT)(signal.SIGINT, None)
            yield repository


class TestInterrupts:
    def test_first_signal_sets_cancel(self):
        cancel = threading.Event()
        with _interrupt_handler(cancel):
            handler = signal.getsignal(signal.SIGINT)
            handler(signal.SIGINT, None)
            assert cancel.is_set()
        assert signal.getsignal(signal.SIGINT) is not handler

    def test_second_signal_exits_immediately(self, monkeypatch):
        exits = []
        monkeypatch.setattr(os, "_exit", exits.append)
        cancel = threading.Event()
        with _interrupt_handler(cancel):
            handler = signal.getsignal(signal.SIGTERM)
            handler(signal.SIGTERM, None)
            assert exits == []
            handler(signal.SIGTERM, None)
        assert exits == [EXIT_INTERRUPT]

    def test_interrupted_org_scan_reports_partial_results(self, runner, repos_dir, monkeypatch):
        monkeypatch.setattr("pipeaudit.cli.LocalOrganization", _InterruptedOrganization)
        result = runner.invoke(cli, ["analyze-org", repos_dir, "--threads", "1", "--format", "json"])
        assert result.exit_code == EXIT_INTERRUPT
        assert "Interrupted" in result.output
        report = json.loads(result.output[result.output.index("{"):])
        assert [r["repository"] for r in report["repositories"]] == ["gitlab"]
