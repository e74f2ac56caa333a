"""Path helpers that keep every lookup scoped inside a root directory."""

from __future__ import annotations

import errno
import os
import posixpath
import stat

_SEP = "/"
_MAX_LINKS = 255


def _clean(path: str) -> str:
    """Lexically clean a path, collapsing a leading '//' to a single '/'."""
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = _SEP + cleaned.lstrip(_SEP)
    return cleaned


def secure_join(root: str, unsafe_path: str) -> str:
    """Join unsafe_path onto root, resolving symlinks as if root were '/'.

    Neither '..' components nor symlinks (relative or absolute) can make the
    result point outside root. Components that do not exist are taken as they
    are. Raises OSError with errno ELOOP after too many symlinks.
    """
    unsafe = unsafe_path
    resolved = ""
    links = 0
    while unsafe:
        if links > _MAX_LINKS:
            raise OSError(errno.ELOOP, os.strerror(errno.ELOOP), f"{root}/{unsafe}")
        part, _, unsafe = unsafe.partition(_SEP)

        scoped = _clean(_SEP + resolved + part)
        if scoped == _SEP:
            resolved = ""
            continue
        full = _clean(root + scoped)

        try:
            mode: int | None = os.lstat(full).st_mode
        except (FileNotFoundError, NotADirectoryError):
            mode = None
        if mode is None or not stat.S_ISLNK(mode):
            resolved += part + _SEP
            continue

        links += 1
        dest = os.readlink(full)
        if dest.startswith(_SEP):
            resolved = ""
        unsafe = dest + _SEP + unsafe

    return _clean(root + _clean(_SEP + resolved))


def strip_root(root: str, path: str) -> str:
    """Return path relative to root; paths outside root lose their leading '/'."""
    root, path = _clean(_SEP + root), _clean(_SEP + path)
    if path == root:
        path = _SEP
    elif root == _SEP:
        pass
    elif path.startswith(root + _SEP):
        path = path[len(root) + 1:]
    return _clean("." + _SEP + path)


def secure_paths(root: str, path: str) -> tuple[str, str]:
    """Return the absolute and root-relative form of path, scoped inside root.

    An absolute path has root stripped from it before it is joined onto root.
    """
    if posixpath.isabs(path):
        path = strip_root(root, path)
    absolute = secure_join(root, path)
    return absolute, strip_root(root, absolute)


def secure_path_error(root: str, err: BaseException) -> BaseException:
    """Return err with any file name in it made relative to root."""
    if isinstance(err, OSError) and err.filename is not None and err.errno is not None:
        stripped = strip_root(root, os.fsdecode(err.filename))
        return type(err)(err.errno, err.strerror, stripped)
    return err