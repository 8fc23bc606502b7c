"""Desired-State Store — the Live and Staged documents and their diff.

Live is what is actually installed; Staged is the operator's target. Every
edit to Staged is persisted immediately; applying copies Staged into Live and
deletes the staged file, so "unsaved changes exist" exactly when the staged
file is on disk.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Iterable

from modsync.errors import ProtectedBundleError, StateError
from modsync.observability import log_event
from modsync.state.documents import load_document, read_json, write_json_atomic
from modsync.state.models import (
    BundleEntry,
    CompletionMarker,
    DesiredState,
    PendingDeletion,
    PendingOperations,
    StateDiff,
    compute_diff,
    utc_now,
)
from modsync.sync.exclusions import DEFAULT_EXCLUSIONS

log = logging.getLogger("modsync.state")


class DesiredStateStore:
    """File-backed owner of the Live and Staged desired-state documents."""

    LIVE_FILE = "live.json"
    STAGED_FILE = "staged.json"
    PENDING_FILE = "pending_operations.json"
    MARKER_FILE = "completed.json"

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.live_path = self.data_dir / self.LIVE_FILE
        self.staged_path = self.data_dir / self.STAGED_FILE
        self.pending_path = self.data_dir / self.PENDING_FILE
        self.marker_path = self.data_dir / self.MARKER_FILE

        self.live: DesiredState = load_document(
            self.live_path, DesiredState.from_dict, DesiredState
        )
        if self.staged_path.exists():
            self.staged: DesiredState = load_document(
                self.staged_path, DesiredState.from_dict, self.live.copy
            )
        else:
            self.staged = self.live.copy()
        self.pending: PendingOperations = load_document(
            self.pending_path, PendingOperations.from_dict, PendingOperations
        )
        # Guards Staged edits; bumped on every edit so an apply can tell
        # whether Staged moved underneath it.
        self.lock = threading.RLock()
        self.staged_revision = 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def diff(self) -> StateDiff:
        """Compute install/remove/update sets between Staged and Live."""
        return compute_diff(self.staged, self.live)

    def has_staged_file(self) -> bool:
        return self.staged_path.exists()

    def has_pending_changes(self) -> bool:
        """True when the diff is non-empty or unsaved staged edits exist on disk."""
        return self.diff().has_changes or self.has_staged_file()

    def effective_exclusions(self) -> list[str]:
        """Live's exclusion patterns, preceded by the built-in defaults when enabled."""
        patterns: list[str] = []
        if self.live.use_default_exclusions:
            patterns.extend(DEFAULT_EXCLUSIONS)
        for pattern in self.live.sync_exclusions:
            if pattern not in patterns:
                patterns.append(pattern)
        return patterns

    # ------------------------------------------------------------------
    # Staged edits (each one persists immediately)
    # ------------------------------------------------------------------

    def upsert_bundle(self, entry: BundleEntry) -> BundleEntry:
        """Add a bundle to Staged, or replace the one with the same URL."""
        if not entry.url:
            raise StateError("Bundle URL must be a non-empty string.")
        with self.lock:
            existing = self.staged.find(entry.url)
            if existing is not None and existing.protected:
                raise ProtectedBundleError(f"Bundle '{existing.name}' is protected")

            # Protection is only granted through the bootstrap list.
            entry.protected = False
            if existing is not None:
                entry.last_updated = entry.last_updated or existing.last_updated
                index = self.staged.bundles.index(existing)
                self.staged.bundles[index] = entry
            else:
                self.staged.bundles.append(entry)
            self.staged_revision += 1
            self.save_staged()
        log_event(log, logging.INFO, "staged.upsert", name=entry.name, url=entry.url)
        return entry

    def remove_bundle(self, url: str) -> BundleEntry:
        """Remove a bundle from Staged, signalling an uninstall on next apply."""
        with self.lock:
            existing = self.staged.find(url)
            if existing is None:
                raise StateError(f"Bundle '{url}' is not in the staged state")
            if existing.protected:
                raise ProtectedBundleError(f"Bundle '{existing.name}' is protected")
            self.staged.bundles.remove(existing)
            self.staged_revision += 1
            self.save_staged()
        log_event(log, logging.INFO, "staged.remove", name=existing.name, url=url)
        return existing

    def set_exclusions(self, patterns: Iterable[str], use_defaults: bool | None = None) -> None:
        """Replace Staged's exclusion patterns."""
        cleaned: list[str] = []
        for pattern in patterns:
            pattern = pattern.strip()
            if pattern and pattern not in cleaned:
                cleaned.append(pattern)
        with self.lock:
            self.staged.sync_exclusions = cleaned
            if use_defaults is not None:
                self.staged.use_default_exclusions = use_defaults
            self.staged_revision += 1
            self.save_staged()

    def discard_staged(self) -> list[str]:
        """Reset Staged to Live and delete the staged file.

        Returns the URLs of bundles that were staged but never installed, so
        the caller can clear their staging caches.
        """
        with self.lock:
            live_urls = set(self.live.urls())
            discarded = [b.url for b in self.staged.bundles if b.url not in live_urls]
            self.staged = self.live.copy()
            self.staged_revision += 1
            self.staged_path.unlink(missing_ok=True)
        return discarded

    def save_staged(self) -> None:
        write_json_atomic(self.staged_path, self.staged.to_dict())

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------

    def apply_staged_to_live(self, snapshot: DesiredState | None = None) -> None:
        """Live := deep copy of Staged; persist Live; delete the staged file.

        With *snapshot*, that state replaces both documents instead. Callers
        pass one only when Staged has not been edited since it was taken.
        """
        with self.lock:
            if snapshot is not None:
                self.staged = snapshot.copy()
            new_live = self.staged.copy()
            write_json_atomic(self.live_path, new_live.to_dict())
            self.live = new_live
            self.staged_path.unlink(missing_ok=True)
        log_event(log, logging.INFO, "live.applied", bundles=len(self.live.bundles))

    def commit_live(
        self, bundles: list[BundleEntry], exclusions_from: DesiredState | None = None
    ) -> None:
        """Persist a partially-applied Live; the staged file stays on disk.

        Exclusions are taken from *exclusions_from*, defaulting to Staged.
        """
        source = exclusions_from if exclusions_from is not None else self.staged
        new_live = DesiredState(
            bundles=[b for b in bundles],
            sync_exclusions=list(source.sync_exclusions),
            use_default_exclusions=source.use_default_exclusions,
        ).copy()
        write_json_atomic(self.live_path, new_live.to_dict())
        self.live = new_live
        if not self.has_staged_file():
            self.save_staged()

    def save_live(self) -> None:
        write_json_atomic(self.live_path, self.live.to_dict())

    # ------------------------------------------------------------------
    # Pending operations
    # ------------------------------------------------------------------

    def queue_removal(self, url: str, paths: Iterable[str]) -> list[PendingDeletion]:
        """Queue a bundle's install folders for deletion. Returns newly added entries."""
        known = {d.path for d in self.pending.pending_deletions}
        added = []
        for path in paths:
            if path not in known:
                deletion = PendingDeletion(path=path, url=url)
                self.pending.pending_deletions.append(deletion)
                known.add(path)
                added.append(deletion)
        if url not in self.pending.pending_removals:
            self.pending.pending_removals.append(url)
        return added

    def set_deferred_installs(self, urls: Iterable[str]) -> None:
        self.pending.deferred_installs = list(dict.fromkeys(urls))

    def save_pending(self) -> None:
        write_json_atomic(self.pending_path, self.pending.to_dict())

    def forget_removal(self, url: str) -> None:
        """Drop every pending-deletion entry and removal record for *url*."""
        self.pending.pending_deletions = [
            d for d in self.pending.pending_deletions if d.url != url
        ]
        self.pending.pending_removals = [u for u in self.pending.pending_removals if u != url]

    # ------------------------------------------------------------------
    # Protected bundles
    # ------------------------------------------------------------------

    def repair_protected(self, bundles: Iterable[BundleEntry]) -> list[str]:
        """Re-add protected bundles missing from Live or Staged.

        Returns the names of repaired bundles.
        """
        repaired: list[str] = []
        live_changed = False
        staged_changed = False
        for bundle in bundles:
            bundle.protected = True
            live_entry = self.live.find(bundle.url)
            if live_entry is None:
                self.live.bundles.append(BundleEntry.from_dict(bundle.to_dict()))
                live_changed = True
                repaired.append(bundle.name)
            elif not live_entry.protected:
                live_entry.protected = True
                live_changed = True
            staged_entry = self.staged.find(bundle.url)
            if staged_entry is None:
                self.staged.bundles.append(BundleEntry.from_dict(bundle.to_dict()))
                staged_changed = True
                if bundle.name not in repaired:
                    repaired.append(bundle.name)
            elif not staged_entry.protected:
                staged_entry.protected = True
                staged_changed = True

        if live_changed:
            self.save_live()
        if staged_changed and self.has_staged_file():
            self.save_staged()
        for name in repaired:
            log.warning("Protected bundle '%s' was missing and has been restored", name)
        return repaired

    # ------------------------------------------------------------------
    # Completion marker
    # ------------------------------------------------------------------

    def absorb_completion_marker(
        self, clear_staging: Callable[[str], None] | None = None
    ) -> CompletionMarker | None:
        """Fold the deferred script's completion marker into Live.

        Installed URLs get ``last_updated`` set to now (copied from Staged when
        Live lacks them) and their staging cache cleared; removed URLs are
        deleted from Live together with their pending deletions. URLs found in
        neither document are ignored. The marker is deleted afterwards.
        """
        try:
            raw = read_json(self.marker_path)
            if raw is None:
                return None
            marker = CompletionMarker.from_json(raw)
        except (StateError, ValueError) as exc:
            log.warning("Discarding unreadable completion marker: %s", exc)
            self.marker_path.unlink(missing_ok=True)
            return None

        now = utc_now()
        for url in marker.installed:
            live_entry = self.live.find(url)
            staged_entry = self.staged.find(url)
            if live_entry is None and staged_entry is None:
                log.warning("Completion marker names unknown installed bundle %s", url)
                continue
            if staged_entry is not None:
                staged_entry.last_updated = now
                entry = BundleEntry.from_dict(staged_entry.to_dict())
                if live_entry is None:
                    self.live.bundles.append(entry)
                else:
                    self.live.bundles[self.live.bundles.index(live_entry)] = entry
            else:
                live_entry.last_updated = now
            if clear_staging is not None:
                clear_staging(url)
            self.pending.deferred_installs = [
                u for u in self.pending.deferred_installs if u != url
            ]
            log_event(log, logging.INFO, "marker.installed", url=url)

        for url in marker.removed:
            live_entry = self.live.find(url)
            if live_entry is None:
                log.warning("Completion marker names unknown removed bundle %s", url)
            else:
                self.live.bundles.remove(live_entry)
                log_event(log, logging.INFO, "marker.removed", name=live_entry.name, url=url)
            self.forget_removal(url)

        self.save_live()
        self.save_pending()
        self.drop_staged_if_converged()
        self.marker_path.unlink(missing_ok=True)
        return marker

    def drop_staged_if_converged(self) -> bool:
        """Delete the staged file once Live has caught up with it."""
        if not self.has_staged_file() or self.diff().has_changes:
            return False
        if (
            self.staged.sync_exclusions != self.live.sync_exclusions
            or self.staged.use_default_exclusions != self.live.use_default_exclusions
        ):
            return False
        self.staged_path.unlink(missing_ok=True)
        return True
