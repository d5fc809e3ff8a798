"""
Tests for artifact staging across execution contexts.
"""

import io
import zipfile

import pytest

from cfpush.errors import DeployError, ErrorKind
from cfpush.events import RunLog
from cfpush.staging import LocalContext, RemoteContext, archive, stage_artifact, unarchive


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "workspace"
    (ws / "target" / "app").mkdir(parents=True)
    (ws / "target" / "app" / "app.jar").write_text("jar")
    (ws / "manifest.yml").write_text("applications:\n- name: shop\n")
    return ws


def test_local_context_uses_workspace_directly(workspace):
    staged = stage_artifact(LocalContext(workspace), "target/app")
    assert staged.path == workspace
    assert not staged.transferred
    staged.cleanup()
    assert workspace.exists()


def test_remote_context_is_rerooted_to_single_entry(workspace, tmp_path):
    log = RunLog()
    staged = stage_artifact(RemoteContext(workspace), "target/app", log=log, temp_root=tmp_path)
    try:
        assert staged.transferred
        assert staged.path.name == "app"
        assert (staged.path / "app.jar").read_text() == "jar"
        assert any(line.startswith("INFO: Transferring from") for line in log.lines)
    finally:
        staged.cleanup()
    assert not staged.path.exists()
    assert (workspace / "target" / "app" / "app.jar").exists()


def test_remote_context_without_sub_path_stages_workspace(workspace, tmp_path):
    staged = stage_artifact(RemoteContext(workspace), temp_root=tmp_path)
    try:
        assert staged.path.name == "workspace"
        assert (staged.path / "manifest.yml").exists()
    finally:
        staged.cleanup()


def test_single_file_artifact(workspace, tmp_path):
    staged = stage_artifact(RemoteContext(workspace), "target/app/app.jar", temp_root=tmp_path)
    try:
        assert staged.path.name == "app.jar"
        assert staged.path.is_file()
    finally:
        staged.cleanup()


def _zip(entries):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name in entries:
            zf.writestr(name, "x")
    return buffer.getvalue()


class FixedArchiveContext(RemoteContext):
    def __init__(self, workspace, data):
        super().__init__(workspace)
        self.data = data

    def archive(self, sub_path=None):
        return self.data


@pytest.mark.parametrize("entries", [[], ["a/one.txt", "b/two.txt"]])
def test_wrong_number_of_entries_is_corruption(workspace, tmp_path, entries):
    staging_root = tmp_path / "staging"
    staging_root.mkdir()
    with pytest.raises(DeployError) as exc:
        stage_artifact(FixedArchiveContext(workspace, _zip(entries)), temp_root=staging_root)
    assert exc.value.kind is ErrorKind.STAGING_CORRUPTED
    assert list(staging_root.iterdir()) == []


def test_missing_application_path(workspace, tmp_path):
    with pytest.raises(DeployError) as exc:
        stage_artifact(RemoteContext(workspace), "does/not/exist", temp_root=tmp_path)
    assert exc.value.kind is ErrorKind.STAGING_CORRUPTED


def test_unarchive_rejects_escaping_entries(tmp_path):
    with pytest.raises(DeployError) as exc:
        unarchive(_zip(["../evil.txt"]), tmp_path / "out")
    assert exc.value.kind is ErrorKind.STAGING_CORRUPTED


def test_unarchive_rejects_garbage(tmp_path):
    with pytest.raises(DeployError):
        unarchive(b"not a zip", tmp_path / "out")


def test_archive_wraps_directory_in_one_entry(workspace):
    with zipfile.ZipFile(io.BytesIO(archive(workspace / "target"))) as zf:
        tops = {name.split("/")[0] for name in zf.namelist()}
    assert tops == {"target"}
