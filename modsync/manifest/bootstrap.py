"""Self-download archive: the installed files of every protected bundle."""

from __future__ import annotations

import io
import logging
import zipfile
from pathlib import Path

from modsync.manifest.models import FileManifest
from modsync.state.store import DesiredStateStore

log = logging.getLogger("modsync.manifest")


def build_bootstrap_archive(
    manifest: FileManifest, store: DesiredStateStore, root: Path
) -> bytes | None:
    """Zip the manifest files owned by protected Live bundles.

    Returns ``None`` when no protected bundle has any installed file.
    """
    owners = {b.name for b in store.live.bundles if b.protected}
    paths = sorted(path for path, entry in manifest.files.items() if entry.owner_name in owners)
    if not paths:
        return None

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for relative in paths:
            source = root / relative
            try:
                archive.write(source, arcname=relative)
            except OSError as exc:
                log.error("Leaving %s out of the bootstrap archive: %s", relative, exc)
    return buffer.getvalue()
