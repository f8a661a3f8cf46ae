"""
CLI smoke tests with fake storage services.

Tests basic CLI functionality and command wiring without real cloud
storage. The CLI context is patched so every command talks to the
in-memory signing server, S3 bucket and blob container.
"""
from __future__ import annotations

import dataclasses

import pytest
from typer.testing import CliRunner

from resumable_uploads.cli import app
from resumable_uploads.cli_context import CLIContext
from resumable_uploads.settings import MIB


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def use_cloud(monkeypatch, cloud):
    """Route CLI commands to the fake cloud with the given settings."""
    def install(settings):
        context = CLIContext(settings=settings, http_transport=cloud.transport)
        monkeypatch.setattr(CLIContext, "from_env", lambda: context)
        return context
    return install


@pytest.fixture
def big_file(tmp_path, make_payload):
    path = tmp_path / "model.bin"
    path.write_bytes(make_payload(12 * MIB))
    return path


class TestCLISmokeTests:
    """Smoke tests for CLI commands."""

    def test_plan_chunked(self, runner, big_file):
        """Test plan command for a file above the threshold."""
        result = runner.invoke(app, ["plan", str(big_file)])

        assert result.exit_code == 0
        assert "3 chunks" in result.stdout
        assert "12.0 MB" in result.stdout

    def test_plan_whole_file(self, runner, tmp_path):
        path = tmp_path / "small.txt"
        path.write_text("hello")

        result = runner.invoke(app, ["plan", str(path)])

        assert result.exit_code == 0
        assert "whole file" in result.stdout

    def test_plan_missing_file(self, runner, tmp_path):
        result = runner.invoke(app, ["plan", str(tmp_path / "nope.bin")])
        assert result.exit_code == 2

    def test_plan_invalid_chunk_size(self, runner, big_file):
        result = runner.invoke(app, ["plan", str(big_file), "--chunk-size", "0"])
        assert result.exit_code == 2

    def test_missing_configuration(self, runner, big_file):
        """Commands needing settings fail with exit code 2 when env is empty."""
        result = runner.invoke(app, ["status", "some-session"])
        assert result.exit_code == 2

    def test_upload(self, runner, big_file, cloud, s3_settings, use_cloud):
        use_cloud(s3_settings)

        result = runner.invoke(app, ["upload", str(big_file), "--key", "models/model.bin", "--session-id", "cli-1", "--ci"])

        assert result.exit_code == 0
        assert "Uploaded uploads/models/model.bin" in result.stdout
        assert "Parts: 3" in result.stdout
        assert cloud.s3.objects["models/model.bin"] == big_file.read_bytes()

    def test_upload_azure(self, runner, tmp_path, cloud, azure_settings, use_cloud, make_payload):
        use_cloud(azure_settings)
        path = tmp_path / "notes.txt"
        path.write_bytes(make_payload(5000))

        result = runner.invoke(app, ["upload", str(path), "--key", "notes.txt", "--ci"])

        assert result.exit_code == 0
        assert cloud.blob.blobs["notes.txt"] == path.read_bytes()

    def test_upload_bucket_mismatch_exit_code(self, runner, big_file, cloud, s3_settings, use_cloud):
        cloud.s3.echo_bucket = "elsewhere"
        use_cloud(s3_settings)

        result = runner.invoke(app, ["upload", str(big_file), "--ci"])

        assert result.exit_code == 6

    def test_interrupted_upload_status_and_abort(self, runner, big_file, cloud, s3_settings, use_cloud, tmp_path):
        """A failed upload leaves resume state that status shows and abort releases."""
        settings = dataclasses.replace(s3_settings, max_attempts=1, state_dir=str(tmp_path / "state"))
        use_cloud(settings)
        cloud.s3.faults.drop("upload_part", chunk_index=2)

        result = runner.invoke(app, ["upload", str(big_file), "--session-id", "cli-2", "--key", "k.bin", "--ci"])
        assert result.exit_code == 3

        result = runner.invoke(app, ["status", "cli-2"])
        assert result.exit_code == 0
        assert "Remote handle: upload-1" in result.stdout
        assert "Key: k.bin" in result.stdout

        result = runner.invoke(app, ["abort", "cli-2"])
        assert result.exit_code == 0
        assert "Aborted cli-2" in result.stdout
        assert cloud.s3.aborted == ["upload-1"]

        result = runner.invoke(app, ["status", "cli-2"])
        assert "No persisted state" in result.stdout

    def test_resume_through_cli(self, runner, big_file, cloud, s3_settings, use_cloud, tmp_path):
        settings = dataclasses.replace(s3_settings, max_attempts=1, state_dir=str(tmp_path / "state"))
        use_cloud(settings)
        cloud.s3.faults.drop("upload_part", chunk_index=2)

        assert runner.invoke(app, ["upload", str(big_file), "--session-id", "cli-3", "--key", "k.bin", "--ci"]).exit_code == 3
        result = runner.invoke(app, ["upload", str(big_file), "--session-id", "cli-3", "--ci"])

        assert result.exit_code == 0
        assert cloud.s3.count("initiate") == 1
        assert cloud.s3.objects["k.bin"] == big_file.read_bytes()

    def test_abort_unknown_session(self, runner, s3_settings, use_cloud):
        use_cloud(s3_settings)
        result = runner.invoke(app, ["abort", "never-seen"])
        assert result.exit_code == 0
        assert "nothing to abort" in result.stdout

    def test_help(self, runner):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("upload", "status", "abort", "plan"):
            assert command in result.stdout
