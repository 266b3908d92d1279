"""File helpers shared by the config composer, rule-set builder and settings store."""

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def atomic_write(path: Path, content: str | bytes) -> None:
    """Write content to path so that readers see either the old or the new file.

    The temp file is created in the destination directory so os.replace stays on
    one filesystem. It is removed on any failure.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    mode = "wb" if isinstance(content, bytes) else "w"
    encoding = None if isinstance(content, bytes) else "utf-8"

    tmp_path = ""
    try:
        with tempfile.NamedTemporaryFile(
            mode=mode,
            encoding=encoding,
            delete=False,
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
        ) as f:
            tmp_path = f.name
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        tmp_path = ""
    finally:
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.unlink(tmp_path)
            except OSError as e:
                logger.warning(f"Failed to remove temp file {tmp_path}: {e}")


def file_stat(path: Path) -> dict:
    """Size and modification time (unix seconds) of a file."""
    stat = Path(path).stat()
    return {"size": stat.st_size, "modified": int(stat.st_mtime)}


def tail(path: Path, lines: int) -> tuple[list[str], int]:
    """Return the last `lines` lines of a text file and its total line count."""
    with open(path, "r", errors="replace") as f:
        all_lines = f.readlines()
    return (all_lines[-lines:] if lines > 0 else []), len(all_lines)
