"""
Local sync-ignore toggling.

The Dropbox desktop client skips any file or folder that carries the
``com.dropbox.ignored`` extended attribute. Files inside a synced folder
carry ``com.dropbox.attrs``, which is how synced paths are recognised.
On Linux both names live in the ``user.`` namespace.
"""

import fnmatch
import logging
import os
import sys
from pathlib import Path
from typing import List, Tuple, Union

from .exceptions import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

_XATTR_PREFIX = "user." if sys.platform.startswith("linux") else ""

DROPBOX_ATTR = f"{_XATTR_PREFIX}com.dropbox.attrs"
IGNORED_ATTR = f"{_XATTR_PREFIX}com.dropbox.ignored"


def _require_xattr():
    if not hasattr(os, "setxattr"):
        raise ConfigurationError(
            f"Extended attributes are not supported on {sys.platform}",
            config_key="toggle-ignore",
        )


def _has_attr(path: Union[str, Path], name: str) -> bool:
    try:
        os.getxattr(path, name)
    except OSError:
        return False
    return True


def has_dropbox_attr(path: Union[str, Path]) -> bool:
    """Whether ``path`` exists and is tracked by the Dropbox client."""
    _require_xattr()
    return os.path.exists(path) and _has_attr(path, DROPBOX_ATTR)


def toggle_ignored(path: Union[str, Path]) -> bool:
    """
    Flip the ignored state of ``path``.

    Returns:
        True if the path is ignored afterwards
    """
    _require_xattr()
    if _has_attr(path, IGNORED_ATTR):
        os.removexattr(path, IGNORED_ATTR)
        logger.debug("[toggle_ignored] unignored; path:%s", path)
        return False
    os.setxattr(path, IGNORED_ATTR, b"\x01")
    logger.debug("[toggle_ignored] ignored; path:%s", path)
    return True


def parse_ignore_file(ignore_file: Union[str, Path]) -> List[Tuple[str, bool]]:
    """
    Read a ``.gitignore``-style file.

    Blank lines and ``#`` comments are skipped, and ``!`` negates a pattern.

    Returns:
        ``(pattern, negated)`` pairs in file order
    """
    patterns = []
    for line in Path(ignore_file).read_text().splitlines():
        line = line.rstrip()
        if not line or line.startswith("#"):
            continue
        negated = line.startswith("!")
        if negated:
            line = line[1:]
        if line.startswith("\\"):
            line = line[1:]
        patterns.append((line, negated))
    return patterns


def _matches(rel_path: str, is_dir: bool, pattern: str) -> bool:
    if pattern.endswith("/"):
        if not is_dir:
            return False
        pattern = pattern.rstrip("/")

    anchored = "/" in pattern
    pattern = pattern.lstrip("/")

    if pattern.startswith("**/"):
        tail = pattern[3:]
        parts = rel_path.split("/")
        return any(fnmatch.fnmatchcase("/".join(parts[i:]), tail) for i in range(len(parts)))

    if anchored:
        return fnmatch.fnmatchcase(rel_path, pattern)
    return fnmatch.fnmatchcase(rel_path.rsplit("/", 1)[-1], pattern)


def is_path_ignored(rel_path: str, is_dir: bool, patterns: List[Tuple[str, bool]]) -> bool:
    """Apply ignore patterns to a path relative to the root; the last match wins."""
    ignored = False
    for pattern, negated in patterns:
        if _matches(rel_path, is_dir, pattern):
            ignored = not negated
    return ignored


def find_ignored_paths(root: Union[str, Path], ignore_file: Union[str, Path]) -> List[Path]:
    """
    Walk ``root`` and collect Dropbox-tracked paths matched by ``ignore_file``.

    A matched folder is returned without descending into it.

    Raises:
        ValidationError: If ``ignore_file`` is not an existing regular file
    """
    ignore_file = Path(ignore_file)
    if not ignore_file.is_file():
        raise ValidationError(
            f"{ignore_file} must be an existing .gitignore style file",
            field="ignore_file",
        )
    patterns = parse_ignore_file(ignore_file)
    root = Path(root)

    matched = []
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        kept_dirs = []
        for name in sorted(dirnames):
            path = current / name
            rel = path.relative_to(root).as_posix()
            if is_path_ignored(rel, True, patterns):
                if has_dropbox_attr(path):
                    matched.append(path)
            else:
                kept_dirs.append(name)
        dirnames[:] = kept_dirs

        for name in sorted(filenames):
            path = current / name
            rel = path.relative_to(root).as_posix()
            if is_path_ignored(rel, False, patterns) and has_dropbox_attr(path):
                matched.append(path)

    logger.debug("[find_ignored_paths] matched; root:%s;count:%d", root, len(matched))
    return matched
