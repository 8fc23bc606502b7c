"""JSON document persistence with atomic writes and default-on-missing semantics."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, TypeVar

from modsync.errors import StateError

log = logging.getLogger("modsync.state")

T = TypeVar("T")


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write *payload* as indented JSON, replacing *path* atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.write("\n")
        os.replace(tmp_path, path)
    except OSError as exc:
        raise StateError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


def read_json(path: Path) -> Any:
    """Read JSON from *path*; returns ``None`` when the file does not exist."""
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as exc:
        raise StateError(f"Failed to parse {path}: {exc}") from exc


def load_document(
    path: Path,
    parse: Callable[[dict[str, Any]], T],
    default: Callable[[], T],
    *,
    create: bool = True,
) -> T:
    """Load a document, falling back to *default* when missing or malformed.

    A missing file is created from the default when *create* is set. A
    malformed file is logged and replaced with the default so a bad document
    never blocks startup.
    """
    try:
        raw = read_json(path)
        if raw is None:
            document = default()
            if create:
                _save_default(path, document)
            return document
        if not isinstance(raw, dict):
            raise ValueError("document root must be an object")
        return parse(raw)
    except (StateError, ValueError, TypeError, KeyError) as exc:
        log.warning("Replacing malformed document %s with defaults: %s", path, exc)
        document = default()
        _save_default(path, document)
        return document


def _save_default(path: Path, document: Any) -> None:
    to_dict = getattr(document, "to_dict", None)
    if to_dict is not None:
        write_json_atomic(path, to_dict())
