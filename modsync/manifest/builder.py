"""Manifest builder — hashes the real install locations of every Live bundle."""

from __future__ import annotations

import logging
import time
from pathlib import Path

from modsync.manifest.models import FileEntry, FileManifest
from modsync.observability import elapsed_ms, log_event
from modsync.state.models import BundleEntry, utc_now
from modsync.state.store import DesiredStateStore
from modsync.sync.copying import is_ignored
from modsync.sync.exclusions import ExclusionMatcher
from modsync.utils.hashing import compute_file_hash
from modsync.utils.paths import (
    is_under_roots,
    normalize_relative,
    relative_to_root,
    resolve_target,
)

log = logging.getLogger("modsync.manifest")


class ManifestBuilder:
    """Builds a :class:`FileManifest` from Live.

    Files are read from where they were installed, not from the staging cache,
    so the manifest reflects what a remote installation must end up with.
    With *sync_roots*, files outside them are left out, since remote
    installations could never download them.
    """

    def __init__(
        self,
        store: DesiredStateStore,
        root: str | Path,
        sync_roots: list[str] | None = None,
    ):
        self.store = store
        self.root = Path(root)
        self.sync_roots = sync_roots

    def generate(self) -> FileManifest:
        started = time.perf_counter()
        exclusions = self.store.effective_exclusions()
        matcher = ExclusionMatcher(exclusions)
        files: dict[str, FileEntry] = {}
        seen: dict[str, str] = {}  # casefolded path -> owner name

        for bundle in list(self.store.live.bundles):
            try:
                self._add_bundle(bundle, matcher, files, seen)
            except OSError as exc:
                log.error("Skipping bundle '%s' in manifest: %s", bundle.name, exc)

        manifest = FileManifest(
            generated_at=utc_now(),
            generation_time_ms=elapsed_ms(started),
            files=files,
            sync_exclusions=list(exclusions),
        )
        log_event(
            log, logging.INFO, "manifest.generated",
            files=len(files), duration_ms=manifest.generation_time_ms,
        )
        return manifest

    def _add_bundle(
        self,
        bundle: BundleEntry,
        matcher: ExclusionMatcher,
        files: dict[str, FileEntry],
        seen: dict[str, str],
    ) -> None:
        ignore_rules = bundle.ignore_rules
        for mapping in bundle.install_paths:
            target = resolve_target(mapping.target, self.root)
            if target.is_file():
                candidates = [(target, normalize_relative(mapping.source))]
            elif target.is_dir():
                candidates = [
                    (path, _archive_path(mapping.source, path.relative_to(target).as_posix()))
                    for path in sorted(target.rglob("*"))
                    if path.is_file()
                ]
            else:
                log.warning("Install target %s of '%s' does not exist", mapping.target, bundle.name)
                continue

            outside = 0
            for path, archive_path in candidates:
                if is_ignored(archive_path, ignore_rules):
                    continue
                relative = relative_to_root(path, self.root)
                if self.sync_roots is not None and not is_under_roots(relative, self.sync_roots):
                    outside += 1
                    continue
                if matcher.matches(relative):
                    continue
                key = relative.casefold()
                if key in seen:
                    if seen[key] != bundle.name:
                        log.info(
                            "%s is claimed by '%s' and '%s'; keeping '%s'",
                            relative, seen[key], bundle.name, seen[key],
                        )
                    continue
                try:
                    entry = FileEntry(
                        hash=compute_file_hash(path),
                        size=path.stat().st_size,
                        owner_name=bundle.name,
                        required=bundle.required,
                    )
                except OSError as exc:
                    log.error("Could not hash %s: %s", relative, exc)
                    continue
                seen[key] = bundle.name
                files[relative] = entry
            if outside:
                log.warning(
                    "Left %d files of '%s' under %s out of the manifest: outside the sync roots",
                    outside, bundle.name, mapping.target,
                )


def _archive_path(source: str, inner: str) -> str:
    source = normalize_relative(source)
    return f"{source}/{inner}" if source else inner
