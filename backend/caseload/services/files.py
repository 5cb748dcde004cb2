from pathlib import Path
from fastapi import UploadFile
from caseload.core.config import settings


class UploadTooLarge(ValueError):
    pass


def ensure_dirs():
    Path(settings.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)


def save_upload(file: UploadFile, dest_path: Path, max_bytes: int | None = None) -> int:
    """Copy the upload to dest_path, refusing anything over max_bytes. Returns bytes written."""
    max_bytes = settings.IMPORT_MAX_FILE_BYTES if max_bytes is None else max_bytes
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with dest_path.open("wb") as f:
        for chunk in iter(lambda: file.file.read(1024 * 1024), b""):
            written += len(chunk)
            if written > max_bytes:
                break
            f.write(chunk)
    if written > max_bytes:
        dest_path.unlink(missing_ok=True)
        raise UploadTooLarge(f"File exceeds the {max_bytes} byte limit")
    return written
