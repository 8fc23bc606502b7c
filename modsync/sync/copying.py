"""Copy planning and lock detection, shared by the reconciler and the deferred script."""

from __future__ import annotations

import errno
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from modsync.errors import StagingError
from modsync.utils.paths import normalize_relative, resolve_target

_LOCK_ERRNOS = {errno.EACCES, errno.EBUSY, errno.ETXTBSY, errno.EPERM}
_LOCK_WINERRORS = {32, 33}  # sharing violation, lock violation
_LOCK_HINTS = ("being used by another process", "locked", "resource busy")


@dataclass(frozen=True)
class PlannedCopy:
    """One file copy: archive file → installed file."""

    source: Path
    destination: Path
    archive_path: str  # archive-relative, normalised


def is_ignored(archive_path: str, ignore_rules: Iterable[str]) -> bool:
    """True if *archive_path* equals or lies under any Ignore rule."""
    lowered = normalize_relative(archive_path).casefold()
    for rule in ignore_rules:
        prefix = normalize_relative(rule).casefold()
        if not prefix:
            continue
        if lowered == prefix or lowered.startswith(prefix + "/"):
            return True
    return False


def plan_bundle_copies(
    install_paths: Iterable[tuple[str, str]],
    extracted: Path,
    root: Path,
    ignore_rules: Iterable[str] = (),
) -> list[PlannedCopy]:
    """Expand a bundle's install mappings into individual file copies.

    A mapping whose source is a directory copies its contents into the
    target directory; a file source is copied to the target path itself.

    Raises:
        StagingError: if a mapping's source does not exist in the archive.
    """
    rules = list(ignore_rules)
    planned: list[PlannedCopy] = []
    for source, target in install_paths:
        source_rel = normalize_relative(source)
        source_path = extracted / source_rel if source_rel else extracted
        destination = resolve_target(target, root)

        if source_path.is_file():
            if not is_ignored(source_rel, rules):
                planned.append(PlannedCopy(source_path, destination, source_rel))
            continue
        if not source_path.is_dir():
            raise StagingError(f"Install source '{source}' not found in bundle archive")

        for file_path in sorted(source_path.rglob("*")):
            if not file_path.is_file():
                continue
            archive_path = file_path.relative_to(extracted).as_posix()
            if is_ignored(archive_path, rules):
                continue
            planned.append(
                PlannedCopy(
                    source=file_path,
                    destination=destination / file_path.relative_to(source_path),
                    archive_path=archive_path,
                )
            )
    return planned


def is_locked_error(exc: BaseException) -> bool:
    """Heuristically decide whether *exc* means "file in use by another process"."""
    if isinstance(exc, PermissionError):
        return True
    if isinstance(exc, OSError):
        if getattr(exc, "winerror", None) in _LOCK_WINERRORS:
            return True
        if exc.errno in _LOCK_ERRNOS:
            return True
    message = str(exc).lower()
    return any(hint in message for hint in _LOCK_HINTS)


def target_is_locked(path: Path) -> bool:
    """True if an existing *path* cannot be opened for writing."""
    if not path.exists():
        return False
    try:
        with path.open("r+b"):
            pass
    except OSError as exc:
        return is_locked_error(exc)
    return False


def remove_path(path: Path) -> None:
    """Delete a file or a directory tree; missing paths are ignored."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        os.remove(path)
