"""
Layout of uploaded files under ARTIFACT_ROOT:

    <project_id>/files/<file_id>/<file name>
"""

from pathlib import PurePosixPath


def safe_file_name(file_name: str, fallback: str = "upload.bin") -> str:
    """Strip directory components (either separator) from a client-supplied name."""
    name = PurePosixPath(file_name.replace("\\", "/")).name
    if name in ("", ".", ".."):
        return fallback
    return name


def upload_dir(project_id, file_id) -> str:
    return f"{project_id}/files/{file_id}"


def upload_path(project_id, file_id, file_name: str) -> str:
    return f"{upload_dir(project_id, file_id)}/{safe_file_name(file_name)}"
