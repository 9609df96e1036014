# MIT License
# Copyright (c) 2025 Gordon Trevorrow
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
# Author: Gordon Trevorrow

"""Private-file helpers: owner-only directories, atomic replace and advisory locks."""

import contextlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterator, Union

try:
    import fcntl
except ImportError:  # Windows: os.replace is still atomic, no advisory lock
    fcntl = None

LOG = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


def ensure_private_dir(path: PathLike) -> None:
    os.makedirs(path, exist_ok=True)
    try:
        os.chmod(path, 0o700)
    except OSError:
        LOG.debug("Could not restrict permissions on %s", path)


def atomic_write_bytes(path: PathLike, content: bytes, mode: int = 0o600) -> None:
    """Write ``content`` to ``path`` so readers see either the old or the new file.

    The temp file lives next to the target so ``os.replace`` never crosses a
    filesystem boundary. On any failure the temp file is removed and the
    original file is left as it was.
    """
    path = Path(path)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


@contextlib.contextmanager
def advisory_lock(path: PathLike) -> Iterator[None]:
    """Hold an exclusive cross-process lock scoped to ``path`` (via ``<path>.lock``)."""
    if fcntl is None:
        yield
        return
    lock_path = f"{os.fspath(path)}.lock"
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def file_mode(path: PathLike, default: int = 0o600) -> int:
    try:
        return os.stat(path).st_mode & 0o777
    except FileNotFoundError:
        return default
