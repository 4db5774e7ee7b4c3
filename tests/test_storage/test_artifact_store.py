import uuid

import pytest

from estimateai.storage.artifact_store import ArtifactStore
from estimateai.storage.paths import safe_file_name, upload_path


class TestPaths:

    @pytest.mark.parametrize("given,expected", [
        ("plan.pdf", "plan.pdf"),
        ("../../etc/passwd", "passwd"),
        ("C:\\drawings\\A-101.pdf", "A-101.pdf"),
        ("", "upload.bin"),
        ("..", "upload.bin"),
    ])
    def test_safe_file_name(self, given, expected):
        assert safe_file_name(given) == expected

    def test_upload_path(self):
        assert upload_path("p", "f", "dir/bill.csv") == "p/files/f/bill.csv"


class TestArtifactStore:

    def test_save_and_resolve(self, tmp_path):
        store = ArtifactStore(str(tmp_path))
        project_id, file_id = uuid.uuid4(), uuid.uuid4()
        relative = store.save_upload(project_id, file_id, "finishes.pdf", b"%PDF")
        assert relative == f"{project_id}/files/{file_id}/finishes.pdf"
        assert store.full_path(relative).read_bytes() == b"%PDF"

    def test_remove_upload_clears_file_directory(self, tmp_path):
        store = ArtifactStore(str(tmp_path))
        project_id = uuid.uuid4()
        kept = store.save_upload(project_id, uuid.uuid4(), "plan.pdf", b"a")
        removed = store.save_upload(project_id, uuid.uuid4(), "bill.csv", b"b")

        assert store.remove_upload(removed) is True
        assert not store.full_path(removed).parent.exists()
        assert store.full_path(kept).exists()

    def test_remove_missing_upload(self, tmp_path):
        assert ArtifactStore(str(tmp_path)).remove_upload("nope/files/x/a.pdf") is False
