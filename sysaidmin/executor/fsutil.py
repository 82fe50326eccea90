"""
sysaidmin.executor.fsutil — Crash-safe file replacement.

``atomic_write`` writes to a temp file in the target's directory, fsyncs it,
then ``os.replace``s it over the target.  A crash at any point leaves either
the old content or the new content, never a torn file.  The replacement keeps
the original's mode and, where the process is allowed to, its owner and group.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from sysaidmin.logging import get_logger

log = get_logger(__name__)

DEFAULT_NEW_FILE_MODE = 0o644


def _fsync_dir(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # Some filesystems refuse fsync on directories.
        pass
    finally:
        os.close(fd)


def atomic_write(
    path: str | Path,
    data: bytes,
    mode: int | None = None,
    uid: int | None = None,
    gid: int | None = None,
) -> Path:
    """Replace the content of *path* with *data* atomically.

    Parameters
    ----------
    path : str | Path
        Target file.  Its directory must exist.
    data : bytes
        New content.
    mode : int | None
        Permission bits for the result.  Defaults to the existing file's
        mode, or ``0o644`` for a new file.
    uid, gid : int | None
        Owner and group for the result.  Default to the existing file's.
        When changing ownership is not permitted the temp file keeps the
        caller's identity.

    Returns
    -------
    Path
        The target path.
    """
    target = Path(path)
    try:
        st = target.stat()
    except FileNotFoundError:
        st = None
    if mode is None:
        mode = st.st_mode & 0o7777 if st is not None else DEFAULT_NEW_FILE_MODE
    if st is not None:
        uid = st.st_uid if uid is None else uid
        gid = st.st_gid if gid is None else gid

    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        if uid is not None or gid is not None:
            try:
                os.chown(tmp_name, -1 if uid is None else uid, -1 if gid is None else gid)
            except PermissionError as exc:
                log.warning("could not preserve file owner", path=str(target), uid=uid, gid=gid, error=str(exc))
        # After chown, which may clear setuid/setgid bits.
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise

    _fsync_dir(target.parent)
    return target
