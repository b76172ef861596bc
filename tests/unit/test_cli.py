"""Unit tests for the command line interface."""

import json
from unittest.mock import AsyncMock, patch

from typer.testing import CliRunner

from sitescribe import __version__
from sitescribe.cli.main import RECENT_LOG_NAME, ExitCode, app, outcome_exit_code
from sitescribe.models.capture import (
    AbortReason,
    ArchiveBundle,
    CaptureOutcome,
    CaptureRecord,
    CaptureState,
)


runner = CliRunner()

URL = "https://example.com/"


def persisted_outcome():
    outcome = CaptureOutcome(page_handle="page-1", url=URL)
    outcome.bundle = ArchiveBundle(
        folder_path="webData/example.com",
        entries={"metadata.json": "{}"},
        record=CaptureRecord(title="Example", url=URL, formats=["metadata", "script_data"]),
    )
    outcome.advance(CaptureState.PERSISTED)
    return outcome


def incomplete_outcome():
    """Persisted, but the script data write failed."""
    outcome = persisted_outcome()
    outcome.bundle.record.formats = ["metadata", "html"]
    return outcome


def aborted_outcome():
    outcome = CaptureOutcome(page_handle="page-1", url=URL)
    outcome.abort(AbortReason.AGENT_UNREACHABLE, "In-page agent did not respond")
    return outcome


class TestVersionCommand:
    """Tests for the version command."""

    def test_version(self):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert __version__ in result.output


class TestCaptureCommand:
    """Tests for the capture command."""

    def test_persisted_capture(self, tmp_path):
        with patch("sitescribe.cli.main._capture", new=AsyncMock(return_value=persisted_outcome())) as capture:
            result = runner.invoke(app, ["capture", URL, "--out", str(tmp_path)])

        assert result.exit_code == ExitCode.SUCCESS
        assert "Captured https://example.com/" in result.output
        assert "metadata, script_data" in result.output
        assert capture.await_args.args[0] == URL

    def test_aborted_capture(self, tmp_path):
        with patch("sitescribe.cli.main._capture", new=AsyncMock(return_value=aborted_outcome())):
            result = runner.invoke(app, ["capture", URL, "--out", str(tmp_path)])

        assert result.exit_code == ExitCode.CAPTURE_FAILED
        assert "agent_unreachable" in result.output

    def test_missing_mandatory_kind_fails(self, tmp_path):
        """A bundle without its script data file is not a successful capture."""
        with patch("sitescribe.cli.main._capture", new=AsyncMock(return_value=incomplete_outcome())):
            result = runner.invoke(app, ["capture", URL, "--out", str(tmp_path)])

        assert result.exit_code == ExitCode.CAPTURE_FAILED
        assert "metadata, html" in result.output

    def test_missing_config(self, tmp_path):
        result = runner.invoke(app, ["capture", URL, "--config", str(tmp_path / "nope.yaml")])

        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "configuration file not found" in result.output

    def test_invalid_config(self, tmp_path):
        config = tmp_path / "settings.yaml"
        config.write_text("timings:\n  agent_attempts: 0\n")

        result = runner.invoke(app, ["capture", URL, "--config", str(config)])

        assert result.exit_code == ExitCode.CONFIG_ERROR

    def test_headful_flag(self, tmp_path):
        with patch("sitescribe.cli.main._capture", new=AsyncMock(return_value=persisted_outcome())) as capture:
            runner.invoke(app, ["capture", URL, "--headful", "--stabilize", "--out", str(tmp_path)])

        url, settings, _, _, stabilize = capture.await_args.args
        assert settings.browser.headless is False
        assert stabilize is True


class TestRecentCommand:
    """Tests for the recent command."""

    def test_empty(self, tmp_path):
        result = runner.invoke(app, ["recent", "--out", str(tmp_path)])

        assert result.exit_code == 0
        assert "No captures recorded yet" in result.output

    def test_lists_records(self, tmp_path):
        records = [
            {"title": "Newest", "url": "https://example.com/new", "timestamp": "2024-01-02T00:00:00.000Z",
             "formats": ["metadata", "html", "script_data"]},
            {"title": None, "url": "https://example.com/old", "timestamp": "2024-01-01T00:00:00.000Z",
             "formats": ["metadata", "script_data"]},
        ]
        (tmp_path / RECENT_LOG_NAME).write_text(json.dumps(records))

        result = runner.invoke(app, ["recent", "--out", str(tmp_path)])

        assert result.exit_code == 0
        assert "Newest" in result.output
        assert "(untitled)" in result.output
        assert result.output.index("Newest") < result.output.index("https://example.com/old")

        as_json = runner.invoke(app, ["recent", "--out", str(tmp_path), "--json"])
        assert json.loads(as_json.output) == records


class TestExitCodes:
    """Tests for outcome exit codes."""

    def test_outcome_exit_code(self):
        assert outcome_exit_code(persisted_outcome()) == ExitCode.SUCCESS
        assert outcome_exit_code(aborted_outcome()) == ExitCode.CAPTURE_FAILED
        assert outcome_exit_code(None) == ExitCode.CAPTURE_FAILED
        assert outcome_exit_code(incomplete_outcome()) == ExitCode.CAPTURE_FAILED
