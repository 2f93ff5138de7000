"""File helpers: timestamped backups and atomic replacement."""

import datetime
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Union

from esc_deploy.log import get_logger

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def backup_file(
    file_path: Union[str, Path], now: Optional[datetime.datetime] = None
) -> Optional[Path]:
    """Create a backup of a file with timestamp.

    The backup sits next to the original as ``<name>.backup.<timestamp>``.
    If a backup with that timestamp already exists a ``-N`` counter is
    appended, so every call yields exactly one new file. Returns None when
    there is nothing to back up.
    """
    logger = get_logger()
    file_path = Path(file_path)
    if not file_path.is_file():
        logger.debug(f"No existing file to back up at {file_path}")
        return None

    timestamp = (now or datetime.datetime.now()).strftime(BACKUP_TIMESTAMP_FORMAT)
    backup_path = file_path.with_name(f"{file_path.name}.backup.{timestamp}")
    counter = 1
    while backup_path.exists():
        backup_path = file_path.with_name(
            f"{file_path.name}.backup.{timestamp}-{counter}"
        )
        counter += 1

    shutil.copy2(file_path, backup_path)
    logger.info(f"Backed up {file_path} to {backup_path}")
    return backup_path


def atomic_write(path: Union[str, Path], content: str, mode: int = 0o644) -> None:
    """Write ``content`` to ``path`` so readers see either old or new bytes.

    The data goes to a temporary file in the target directory which is then
    renamed over the target.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def restore_file(backup_path: Union[str, Path], target: Union[str, Path]) -> None:
    """Put a backup back in place, preserving its exact bytes and mode."""
    backup_path = Path(backup_path)
    target = Path(target)
    tmp = target.with_name(f".{target.name}.restore")
    shutil.copy2(backup_path, tmp)
    os.replace(tmp, target)
