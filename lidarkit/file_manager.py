"""Directory helpers for the on-host lidar log store."""

from __future__ import annotations

import logging
import os

log = logging.getLogger(__name__)

RECORD_TIME_LENGTH = 19


def dir_total_size(dir_name: str | os.PathLike[str]) -> int:
    """Total size in bytes of a file, or of every file below a directory."""
    try:
        st = os.stat(dir_name)
    except OSError:
        log.error("cannot stat %s", os.fspath(dir_name))
        return 0
    if os.path.isfile(dir_name):
        return st.st_size
    if not os.path.isdir(dir_name):
        log.warning("unknown directory type: %s", os.fspath(dir_name))
        return 0
    try:
        names = os.listdir(dir_name)
    except OSError:
        log.error("cannot open directory %s", os.fspath(dir_name))
        return 0
    return sum(dir_total_size(os.path.join(dir_name, name)) for name in names)


def record_time_key(filename: str) -> str:
    """The timestamp prefix that orders log files by recording time."""
    if not filename:
        raise ValueError("empty file name")
    return filename[:RECORD_TIME_LENGTH]


def _collect(dir_name: str | os.PathLike[str], out: list[tuple[str, str]]) -> None:
    with os.scandir(dir_name) as entries:
        for entry in entries:
            if entry.is_symlink():
                continue
            if entry.is_file(follow_symlinks=False):
                if not entry.name.startswith("."):
                    out.append((record_time_key(entry.name), entry.name))
            elif entry.is_dir(follow_symlinks=False):
                try:
                    _collect(entry.path, out)
                except OSError:
                    log.error("cannot open directory %s", entry.path)


def collect_file_names(dir_name: str | os.PathLike[str]) -> list[tuple[str, str]]:
    """Visible regular files below ``dir_name`` as (record time, name), oldest first.

    Files with equal keys keep the order in which they were found.
    """
    found: list[tuple[str, str]] = []
    _collect(dir_name, found)
    return sorted(found, key=lambda item: item[0])


def unhide_file(dir_name: str | os.PathLike[str], file_name: str) -> bool:
    """Rename ``.name`` to ``name`` inside ``dir_name``, replacing any existing file.

    Returns False when the name is not hidden, the file is missing or the rename fails.
    """
    if not file_name or not file_name.startswith("."):
        return False
    source = os.path.join(dir_name, file_name)
    if not os.path.exists(source):
        log.warning("file to be renamed does not exist: %s", file_name)
        return False
    target = os.path.join(dir_name, file_name[1:])
    if os.path.exists(target):
        try:
            os.remove(target)
        except OSError as exc:
            log.warning("failed to remove existing file %s: %s", file_name[1:], exc)
    try:
        os.replace(source, target)
    except OSError as exc:
        log.warning("rename of hidden file %s failed: %s", file_name, exc)
        return False
    return True


def unhide_files(dir_name: str | os.PathLike[str]) -> list[str]:
    """Unhide every hidden regular file below ``dir_name``; return the new paths."""
    if not os.fspath(dir_name):
        raise ValueError("empty directory name")
    renamed: list[str] = []
    with os.scandir(dir_name) as entries:
        subdirs = []
        hidden = []
        for entry in entries:
            if entry.is_symlink():
                continue
            if entry.is_file(follow_symlinks=False):
                if entry.name.startswith("."):
                    hidden.append(entry.name)
            elif entry.is_dir(follow_symlinks=False):
                subdirs.append(entry.path)
    for name in hidden:
        if unhide_file(dir_name, name):
            renamed.append(os.path.join(dir_name, name[1:]))
    for sub in subdirs:
        try:
            renamed.extend(unhide_files(sub))
        except OSError:
            log.error("cannot open directory %s", sub)
    return renamed


def delete_hidden_files(dir_name: str | os.PathLike[str]) -> list[str]:
    """Remove every hidden regular file below ``dir_name``; return the removed paths."""
    removed: list[str] = []
    with os.scandir(dir_name) as entries:
        items = list(entries)
    for entry in items:
        if entry.is_symlink():
            continue
        if entry.is_file(follow_symlinks=False):
            if entry.name.startswith("."):
                try:
                    os.remove(entry.path)
                    removed.append(entry.path)
                except OSError as exc:
                    log.warning("cannot remove %s: %s", entry.path, exc)
        elif entry.is_dir(follow_symlinks=False):
            try:
                removed.extend(delete_hidden_files(entry.path))
            except OSError:
                log.error("cannot open directory %s", entry.path)
    return removed


def make_directory(path: str | os.PathLike[str]) -> None:
    """Create a single directory; raises OSError if it exists or cannot be made."""
    os.mkdir(path, 0o777)


def directory_exists(path: str | os.PathLike[str]) -> bool:
    """Whether anything exists at ``path``."""
    return os.access(path, os.F_OK)