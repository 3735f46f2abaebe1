"""Filesystem helpers."""
import logging
import os
import shutil
import stat
import uuid
from pathlib import Path
from typing import Union

from imgfetch.core.errors import CopyError

logger = logging.getLogger(__name__)


def copy_file_atomic(
    src: Union[str, Path],
    dst: Union[str, Path],
    mode: int = 0o777,
) -> None:
    """Copy src to dst so that dst holds either its old or its full new content.

    Bytes are written to a temporary sibling of dst, flushed, then renamed
    over dst. A new dst is created with ``mode`` filtered through the process
    umask; an existing dst keeps its current mode.

    Raises:
        CopyError: If any step fails; dst is left unmodified
    """
    src = Path(src)
    dst = Path(dst)
    tmp = dst.parent / f".{dst.name}.{uuid.uuid4().hex[:8]}.tmp"

    try:
        try:
            existing_mode = stat.S_IMODE(dst.stat().st_mode)
        except FileNotFoundError:
            existing_mode = None

        # os.open applies the umask to mode for us
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
        try:
            with os.fdopen(fd, "wb") as out, open(src, "rb") as inp:
                shutil.copyfileobj(inp, out, length=1024 * 1024)
                out.flush()
                os.fsync(out.fileno())
            if existing_mode is not None:
                os.chmod(tmp, existing_mode)
            os.replace(tmp, dst)
        except BaseException:
            try:
                tmp.unlink()
            except FileNotFoundError:
                pass
            raise
    except OSError as e:
        raise CopyError(f"cannot copy {src} to {dst}: {e}") from e

    logger.debug(f"Copied {src} -> {dst}")
