"""
File lifecycle: move an ingested CSV out of the drop folder.

Files land in processed/<kind dir> after a successful run and in the error
directory when every record failed to persist. A same-named file at the
destination is never overwritten; the incoming file gets the current epoch
milliseconds appended to its stem instead.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import time
from pathlib import Path

from alertsync.config import Settings

logger = logging.getLogger(__name__)


def _free_destination(destination_dir: Path, file_name: str) -> Path:
    candidate = destination_dir / file_name
    if not candidate.exists():
        return candidate

    stem, suffix = Path(file_name).stem, Path(file_name).suffix
    stamp = int(time.time() * 1000)
    candidate = destination_dir / f"{stem}_{stamp}{suffix}"
    while candidate.exists():
        stamp += 1
        candidate = destination_dir / f"{stem}_{stamp}{suffix}"
    logger.warning(
        "file_lifecycle.name_conflict",
        extra={"file": file_name, "renamed_to": candidate.name},
    )
    return candidate


# os.link failures that fall back to an exclusive-create copy
_LINK_UNSUPPORTED = {errno.EXDEV, errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP}


def _claim(source: Path, destination: Path) -> None:
    """Place *source* at *destination*, raising FileExistsError if the name is taken."""
    try:
        os.link(source, destination)
    except FileExistsError:
        raise
    except OSError as e:
        if e.errno not in _LINK_UNSUPPORTED:
            raise
        logger.warning(
            "file_lifecycle.copy_fallback",
            extra={"file": source.name, "error": str(e)},
        )
        with open(source, "rb") as src, open(destination, "xb") as dst:
            shutil.copyfileobj(src, dst)
        shutil.copystat(source, destination)
    source.unlink()


def move_file(source: Path, destination_dir: Path) -> Path:
    """Move *source* into *destination_dir* and return the final path.

    The final placement is a hard link (or an exclusive-create copy where
    links are unavailable), so a file that appears at the chosen name in the
    meantime is never replaced; the next free name is used instead.

    Raises:
        OSError: If the file cannot be placed or removed from the drop folder.
    """
    source = Path(source)
    destination_dir = Path(destination_dir)
    try:
        destination_dir.mkdir(parents=True, exist_ok=True)
        while True:
            destination = _free_destination(destination_dir, source.name)
            try:
                _claim(source, destination)
                break
            except FileExistsError:
                logger.warning("file_lifecycle.destination_taken", extra={"file": destination.name})
    except OSError as e:
        logger.error(
            "file_lifecycle.move_failed",
            extra={"file": str(source), "destination": str(destination_dir), "error": str(e)},
        )
        raise

    logger.info("file_lifecycle.moved", extra={"file": source.name, "destination": str(destination)})
    return destination


class FileLifecycleManager:
    """Routes files between the drop, processed and error directories."""

    def __init__(self, settings: Settings):
        self._settings = settings

    def ensure_directories(self) -> list[Path]:
        directories = self._settings.storage_directories()
        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)
        logger.info("file_lifecycle.directories_ready", extra={"count": len(directories)})
        return directories

    def mark_processed(self, source: Path, kind: str) -> Path:
        return move_file(source, self._settings.processed_dir(kind))

    def mark_failed(self, source: Path) -> Path:
        return move_file(source, self._settings.csv_error_path)
