"""
Test Operations facade wiring.

Validates that the Operations facade builds its collaborators from
settings and drives uploads, status and abort against the fake services.
"""
from __future__ import annotations

import dataclasses

import pytest

from resumable_uploads.errors import TransportError
from resumable_uploads.operations import Operations, OpsConfig, plan_file
from resumable_uploads.persistence import FilePersistence, InMemoryPersistence
from resumable_uploads.settings import MIB


@pytest.fixture
def big_file(tmp_path, make_payload):
    path = tmp_path / "model.bin"
    path.write_bytes(make_payload(12 * MIB))
    return path


class TestOperationsFacade:
    """Test Operations facade orchestration."""

    def test_facade_initialization(self, s3_settings, tmp_path):
        config = OpsConfig(ci=True)
        ops = Operations(config, s3_settings)
        assert ops.cfg is config
        assert isinstance(ops.persistence, InMemoryPersistence)

        ops = Operations(config, dataclasses.replace(s3_settings, state_dir=str(tmp_path)))
        assert isinstance(ops.persistence, FilePersistence)

    def test_settings_loaded_from_env(self, monkeypatch):
        monkeypatch.setenv("UPLOADS_ENDPOINT", "https://uploads.s3.amazonaws.com")
        monkeypatch.setenv("UPLOADS_SIGNATURE_ENDPOINT", "http://localhost:8080/sign")
        monkeypatch.setenv("UPLOADS_ACCESS_KEY", "AKID")

        ops = Operations(OpsConfig())

        assert ops.settings.bucket_name == "uploads"

    def test_upload_with_key(self, cloud, s3_settings, big_file):
        ops = Operations(OpsConfig(), s3_settings, http_transport=cloud.transport)

        session_id, result = ops.upload(str(big_file), session_id="ops-1", key="a/b.bin")

        assert session_id == "ops-1"
        assert result.key == "a/b.bin"
        assert cloud.s3.objects["a/b.bin"] == big_file.read_bytes()

    def test_upload_generates_session_id(self, cloud, s3_settings, big_file):
        ops = Operations(OpsConfig(), s3_settings, http_transport=cloud.transport)
        session_id, result = ops.upload(str(big_file))
        assert len(session_id) == 32
        assert result.key.endswith(".bin")

    def test_status_and_abort(self, cloud, s3_settings, big_file):
        settings = dataclasses.replace(s3_settings, max_attempts=1)
        ops = Operations(OpsConfig(), settings, http_transport=cloud.transport)
        cloud.s3.faults.drop("upload_part", chunk_index=2)

        with pytest.raises(TransportError):
            ops.upload(str(big_file), session_id="ops-2", key="k.bin")

        record_id, state = ops.status("ops-2")
        assert record_id == "ops-2-uploads"
        assert state.remote_handle == "upload-1"
        assert [receipt.index for receipt in state.receipts] == [0, 1]

        assert ops.abort("ops-2") is True
        assert ops.status("ops-2")[1] is None
        assert cloud.s3.aborted == ["upload-1"]


class TestPlanFile:
    def test_plan_file(self, big_file):
        plan = plan_file(str(big_file))
        assert len(plan) == 3

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            plan_file(str(tmp_path / "missing"))
