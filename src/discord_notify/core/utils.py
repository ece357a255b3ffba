from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Union


def atomic_write(
    path: Path, content: Union[str, bytes], durable: bool = False
) -> None:
    """Replace ``path`` with ``content`` without exposing a partial file.

    The payload goes to a temp file in the same directory which is then
    renamed over the target. With ``durable`` the temp file and the parent
    directory are fsynced as well.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8") if isinstance(content, str) else content
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            if durable:
                os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    if durable:
        _fsync_dir(path.parent)


def _fsync_dir(directory: Path) -> None:
    try:
        dir_fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


def expand_path(value: Union[str, Path]) -> Path:
    return Path(os.path.expandvars(str(value))).expanduser()
