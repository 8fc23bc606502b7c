"""Path normalisation shared by the installer, the manifest and the client.

Bundle install targets are written relative to the installation root using the
``<ROOT>`` placeholder, e.g. ``<ROOT>/Plugins``. Manifest keys and exclusion
patterns use forward slashes and never start with a slash.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath

from modsync.errors import PathSecurityError

ROOT_PLACEHOLDER = "<ROOT>"


def normalize_relative(path: str) -> str:
    """Return *path* with forward slashes and no leading slash or ``./``."""
    normalized = path.replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/").rstrip("/")


def to_root_relative(target: str) -> str:
    """Strip the ``<ROOT>`` placeholder from an install target."""
    return normalize_relative(target.replace(ROOT_PLACEHOLDER, "", 1))


def to_placeholder(relative: str) -> str:
    """Express a root-relative path with the ``<ROOT>`` placeholder."""
    relative = normalize_relative(relative)
    return f"{ROOT_PLACEHOLDER}/{relative}" if relative else ROOT_PLACEHOLDER


def resolve_target(target: str, root: Path) -> Path:
    """Resolve an install target (placeholder or root-relative) against *root*."""
    relative = to_root_relative(target)
    return root / relative if relative else root


def relative_to_root(path: Path, root: Path) -> str:
    """Return *path* as a normalised root-relative string."""
    return normalize_relative(path.relative_to(root).as_posix())


def is_under_roots(relative: str, roots: list[str]) -> bool:
    """True when root-relative *relative* lies in (or is) one of *roots*, ignoring case."""
    lowered = normalize_relative(relative).casefold()
    for allowed in roots:
        prefix = normalize_relative(allowed).casefold()
        if prefix and (lowered == prefix or lowered.startswith(prefix + "/")):
            return True
    return False


def safe_join(root: Path, relative: str, allowed_roots: list[str] | None = None) -> Path:
    """Join *relative* onto *root*, rejecting traversal and disallowed roots.

    Raises:
        PathSecurityError: if the path is absolute, contains ``..``, resolves
            outside *root*, or is not under one of *allowed_roots*.
    """
    raw = relative.replace("\\", "/")
    if raw.startswith("/") or (len(raw) > 1 and raw[1] == ":"):
        raise PathSecurityError(f"Absolute paths are not allowed: {relative}")
    normalized = normalize_relative(raw)
    parts = PurePosixPath(normalized).parts
    if not parts or any(part in ("..", ".") for part in parts):
        raise PathSecurityError(f"Invalid path: {relative}")

    if allowed_roots is not None:
        if not is_under_roots(normalized, allowed_roots):
            raise PathSecurityError(f"Path is outside the sync roots: {relative}")

    resolved_root = root.resolve()
    candidate = (resolved_root / normalized).resolve()
    if candidate != resolved_root and resolved_root not in candidate.parents:
        raise PathSecurityError(f"Path escapes the installation root: {relative}")
    return candidate
