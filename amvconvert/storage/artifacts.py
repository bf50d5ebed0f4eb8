"""Scratch storage for uploaded sources and converted artifacts."""

import os
import time
import uuid
from typing import Optional, Tuple

from fastapi import UploadFile

from amvconvert.jobs.errors import NoFileUploaded, PayloadTooLarge, UnsupportedFormat
from amvconvert.utils.logging_config import get_logger

logger = get_logger(__name__)

ALLOWED_EXTENSIONS = (".mp4", ".avi", ".mkv", ".webm", ".mov", ".m4v", ".flv", ".wmv")
TARGET_EXTENSION = ".amv"

_CHUNK_BYTES = 1024 * 1024


def split_upload_name(filename: Optional[str]) -> Tuple[str, str]:
    """Return (stem, lowercase extension) for an uploaded file name.

    Raises NoFileUploaded for an empty name and UnsupportedFormat for an
    extension outside ALLOWED_EXTENSIONS.
    """
    if not filename:
        raise NoFileUploaded()
    base = os.path.basename(filename.replace("\\", "/"))
    stem, ext = os.path.splitext(base)
    ext = ext.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise UnsupportedFormat(filename)
    return stem or "video", ext


class ArtifactStore:
    """Owns the uploads/ and converted/ directories.

    Nothing here survives a restart: files left behind by a previous process
    are swept by ``sweep``.
    """

    def __init__(self, uploads_dir: str, converted_dir: str, max_upload_bytes: int):
        self.uploads_dir = uploads_dir
        self.converted_dir = converted_dir
        self.max_upload_bytes = max_upload_bytes
        os.makedirs(self.uploads_dir, exist_ok=True)
        os.makedirs(self.converted_dir, exist_ok=True)

    def output_path(self, job_id: str) -> str:
        return os.path.join(self.converted_dir, f"{job_id}{TARGET_EXTENSION}")

    async def save_upload(self, file: UploadFile) -> Tuple[str, str]:
        """Validate and stream an upload to disk in 1 MB chunks.

        Returns:
            (input_path, original_name) where original_name is the file stem.
        """
        stem, ext = split_upload_name(file.filename)
        upload_path = os.path.join(self.uploads_dir, f"{uuid.uuid4()}{ext}")

        total = 0
        try:
            with open(upload_path, "wb") as dst:
                while True:
                    chunk = await file.read(_CHUNK_BYTES)
                    if not chunk:
                        break
                    total += len(chunk)
                    if total > self.max_upload_bytes:
                        raise PayloadTooLarge(self.max_upload_bytes)
                    dst.write(chunk)
        except BaseException:
            self.remove(upload_path)
            raise

        if total == 0:
            self.remove(upload_path)
            raise NoFileUploaded()

        logger.info(f"Stored upload {file.filename!r} ({total} bytes) at {upload_path}")
        return upload_path, stem

    @staticmethod
    def remove(path: Optional[str]) -> bool:
        """Delete a file, treating an already-missing file as success."""
        if not path:
            return False
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning(f"Could not remove {path}: {exc}")
            return False

    def sweep(self, max_age_seconds: float = 0.0) -> int:
        """Remove scratch files older than ``max_age_seconds``. Returns count removed."""
        now = time.time()
        removed = 0
        for directory in (self.uploads_dir, self.converted_dir):
            if not os.path.isdir(directory):
                continue
            for entry in os.listdir(directory):
                path = os.path.join(directory, entry)
                if not os.path.isfile(path):
                    continue
                try:
                    age = now - os.path.getmtime(path)
                except FileNotFoundError:
                    continue
                if age >= max_age_seconds and self.remove(path):
                    removed += 1
        if removed:
            logger.info(f"Swept {removed} stale scratch file(s)")
        return removed
