"""Reconciler — drives the installation tree from Live towards Staged.

Removals are never performed inline: a removed bundle's folders are queued in
the pending-operations document and handed to the deferred-apply script.
Installs copy straight from the staging cache unless a target file is locked,
in which case the whole bundle is deferred to the script.
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from modsync.config import Settings
from modsync.errors import StagingError
from modsync.observability import elapsed_ms, log_event
from modsync.staging.stager import ContentStager
from modsync.state.models import BundleEntry, DesiredState, compute_diff, utc_now
from modsync.state.store import DesiredStateStore
from modsync.sync.copying import (
    is_locked_error,
    plan_bundle_copies,
    remove_path,
    target_is_locked,
)
from modsync.sync.deferred import (
    ApplyPhase,
    DeferredApplyScript,
    DeferredPlan,
    PlannedInstall,
)
from modsync.utils.paths import (
    is_under_roots,
    relative_to_root,
    resolve_target,
    to_placeholder,
    to_root_relative,
)

log = logging.getLogger("modsync.reconciler")


class OutcomeStatus(str, Enum):
    INSTALLED = "installed"
    DEFERRED = "deferred"
    FAILED = "failed"
    QUEUED_FOR_REMOVAL = "queued_for_removal"


@dataclass
class BundleOutcome:
    """What happened to one bundle during an apply."""

    name: str
    url: str
    status: OutcomeStatus
    error: str = ""
    locked_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "url": self.url,
            "status": self.status.value,
            "error": self.error,
            "lockedFiles": list(self.locked_files),
        }


@dataclass
class ApplyResult:
    """Outcome of one :meth:`Reconciler.apply` call."""

    outcomes: list[BundleOutcome] = field(default_factory=list)
    script_path: str | None = None
    installer_launched: bool = False
    duration_ms: int = 0

    def _names(self, status: OutcomeStatus) -> list[str]:
        return [o.name for o in self.outcomes if o.status == status]

    @property
    def installed(self) -> list[str]:
        return self._names(OutcomeStatus.INSTALLED)

    @property
    def queued_for_install(self) -> list[str]:
        return self._names(OutcomeStatus.DEFERRED)

    @property
    def queued_for_removal(self) -> list[str]:
        return self._names(OutcomeStatus.QUEUED_FOR_REMOVAL)

    @property
    def errors(self) -> list[str]:
        return [
            f"{o.name}: {o.error}" for o in self.outcomes if o.status == OutcomeStatus.FAILED
        ]

    @property
    def requires_restart(self) -> bool:
        return self.script_path is not None

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "installed": self.installed,
            "queuedForInstall": self.queued_for_install,
            "queuedForRemoval": self.queued_for_removal,
            "errors": self.errors,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "scriptPath": self.script_path,
            "installerLaunched": self.installer_launched,
            "requiresRestart": self.requires_restart,
            "durationMs": self.duration_ms,
        }


class Reconciler:
    """Applies Staged to the filesystem and to Live.

    One lock serialises :meth:`apply`, so concurrent callers cannot race on
    the Live and Staged documents.
    """

    def __init__(
        self,
        store: DesiredStateStore,
        stager: ContentStager,
        script: DeferredApplyScript,
        settings: Settings,
        is_locked: Callable[[Path], bool] = target_is_locked,
        file_copier: Callable[[Path, Path], object] = shutil.copy2,
    ):
        self.store = store
        self.stager = stager
        self.script = script
        self.settings = settings
        self.is_locked = is_locked
        self.file_copier = file_copier
        self.phase = ApplyPhase.IDLE
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self.settings.root_path

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(self) -> ApplyResult:
        with self._lock:
            return self._apply()

    def _apply(self) -> ApplyResult:
        started = time.perf_counter()
        store = self.store
        # Staged edits made while bundles download stay staged for the next apply.
        with store.lock:
            revision = store.staged_revision
            staged = store.staged.copy()
        diff = compute_diff(staged, store.live)
        result = ApplyResult()

        # A bundle re-added before its removal ran must not be deleted.
        for url in list(store.pending.pending_removals):
            if staged.find(url) is not None:
                store.forget_removal(url)

        for bundle in diff.to_remove:
            folders = self.locate_install_folders(bundle)
            store.queue_removal(bundle.url, [to_placeholder(f) for f in folders])
            if not folders:
                log.warning("No install folder found for removed bundle '%s'", bundle.name)
            result.outcomes.append(
                BundleOutcome(bundle.name, bundle.url, OutcomeStatus.QUEUED_FOR_REMOVAL)
            )
            log_event(log, logging.INFO, "apply.queued_removal", name=bundle.name, folders=len(folders))

        changed = {b.url for b in diff.to_install} | {b.url for b in diff.to_update}
        installed: set[str] = set()
        deferred: list[str] = []
        for bundle in staged.bundles:
            if bundle.url not in changed:
                continue
            outcome = self._install_bundle(bundle)
            result.outcomes.append(outcome)
            if outcome.status == OutcomeStatus.INSTALLED:
                bundle.last_updated = utc_now()
                installed.add(bundle.url)
            elif outcome.status == OutcomeStatus.DEFERRED:
                deferred.append(bundle.url)

        failed = any(o.status == OutcomeStatus.FAILED for o in result.outcomes)
        with store.lock:
            edited = store.staged_revision != revision
            if not deferred and not failed and not diff.to_remove and not edited:
                store.apply_staged_to_live(staged)
            else:
                store.commit_live(self._partial_live(staged, installed), exclusions_from=staged)
            if edited:
                log.info("Staged changed during apply; newer edits stay pending")
                self._stamp_staged(staged, installed)

        store.set_deferred_installs(deferred)
        store.save_pending()
        for url in installed:
            self.stager.clear_staged(url)

        script_path, launched = self.refresh_deferred_script()
        result.script_path = str(script_path) if script_path else None
        result.installer_launched = launched
        result.duration_ms = elapsed_ms(started)
        log_event(
            log, logging.INFO, "apply.done",
            installed=len(result.installed), deferred=len(result.queued_for_install),
            removals=len(result.queued_for_removal), errors=len(result.errors),
            duration_ms=result.duration_ms,
        )
        return result

    def _partial_live(self, staged: DesiredState, installed: set[str]) -> list[BundleEntry]:
        """Live after an incomplete apply: installed bundles replace their old entries."""
        live = self.store.live
        bundles: list[BundleEntry] = []
        for bundle in staged.bundles:
            if bundle.url in installed:
                bundles.append(bundle)
            else:
                current = live.find(bundle.url)
                if current is not None:
                    bundles.append(current)
        staged_urls = set(staged.urls())
        bundles.extend(b for b in live.bundles if b.url not in staged_urls)
        return bundles

    def _stamp_staged(self, staged: DesiredState, installed: set[str]) -> None:
        """Carry install times onto current Staged entries that still match what was installed."""
        for url in installed:
            entry = self.store.staged.find(url)
            applied = staged.find(url)
            if entry is not None and applied is not None and entry.layout_equals(applied):
                entry.last_updated = applied.last_updated
        if self.store.has_staged_file():
            self.store.save_staged()

    def _install_bundle(self, bundle: BundleEntry) -> BundleOutcome:
        try:
            extracted = self.stager.ensure_staged(bundle.url)
            copies = plan_bundle_copies(
                [(p.source, p.target) for p in bundle.install_paths],
                extracted,
                self.root,
                bundle.ignore_rules,
            )
        except (StagingError, OSError) as exc:
            log.error("Failed to stage bundle '%s': %s", bundle.name, exc)
            return BundleOutcome(bundle.name, bundle.url, OutcomeStatus.FAILED, error=str(exc))

        locked = [str(c.destination) for c in copies if self.is_locked(c.destination)]
        if locked:
            log_event(log, logging.INFO, "apply.deferred", name=bundle.name, locked=len(locked))
            return BundleOutcome(
                bundle.name, bundle.url, OutcomeStatus.DEFERRED, locked_files=locked
            )

        created: list[Path] = []
        for done, copy in enumerate(copies):
            try:
                copy.destination.parent.mkdir(parents=True, exist_ok=True)
                is_new = not copy.destination.exists()
                self.file_copier(copy.source, copy.destination)
            except OSError as exc:
                if is_locked_error(exc):
                    # The script re-copies the whole bundle.
                    return BundleOutcome(
                        bundle.name, bundle.url, OutcomeStatus.DEFERRED,
                        locked_files=[str(copy.destination)],
                    )
                log.error("Failed to copy %s for '%s': %s", copy.archive_path, bundle.name, exc)
                removed = self._roll_back(created)
                error = (
                    f"{exc} (stopped after {done} of {len(copies)} files; "
                    f"{removed} new files removed, overwritten files keep the new content)"
                )
                return BundleOutcome(bundle.name, bundle.url, OutcomeStatus.FAILED, error=error)
            if is_new:
                created.append(copy.destination)

        log_event(log, logging.INFO, "apply.installed", name=bundle.name, files=len(copies))
        return BundleOutcome(bundle.name, bundle.url, OutcomeStatus.INSTALLED)

    def _roll_back(self, created: list[Path]) -> int:
        """Delete files an interrupted install created; returns how many went."""
        removed = 0
        for path in reversed(created):
            try:
                path.unlink()
                removed += 1
            except OSError as exc:
                log.warning("Could not roll back %s: %s", path, exc)
        return removed

    # ------------------------------------------------------------------
    # Removal helpers
    # ------------------------------------------------------------------

    def locate_install_folders(self, bundle: BundleEntry) -> list[str]:
        """Find a bundle's folder under each sync root its targets use.

        At most one folder per root is returned: an exact name match, else
        the first directory whose name starts with the bundle name, else the
        first one containing it (all case-insensitive, in sorted order).
        """
        name = bundle.name.strip().casefold()
        if not name:
            return []
        found: list[str] = []
        for sync_root in self._roots_for(bundle):
            base = resolve_target(sync_root, self.root)
            if not base.is_dir():
                continue
            children = sorted(p for p in base.iterdir() if p.is_dir())
            match = (
                next((p for p in children if p.name.casefold() == name), None)
                or next((p for p in children if p.name.casefold().startswith(name)), None)
                or next((p for p in children if name in p.name.casefold()), None)
            )
            if match is not None:
                found.append(relative_to_root(match, self.root))
        return found

    def _roots_for(self, bundle: BundleEntry) -> list[str]:
        """Sync roots that hold, or sit inside, one of *bundle*'s install targets."""
        targets = [to_root_relative(p.target) for p in bundle.install_paths]
        return [
            sync_root for sync_root in self.settings.sync_roots
            if any(
                is_under_roots(target, [sync_root])
                or not target
                or is_under_roots(sync_root, [target])
                for target in targets
            )
        ]

    def replay_pending_deletions(self) -> list[str]:
        """Retry queued deletions; returns the URLs whose removal completed.

        A removed bundle leaves Live once all of its paths are gone and it is
        no longer staged.
        """
        store = self.store
        pending = store.pending
        remaining = []
        for deletion in pending.pending_deletions:
            target = resolve_target(deletion.path, self.root)
            try:
                remove_path(target)
                log_event(log, logging.INFO, "replay.deleted", path=deletion.path)
            except OSError as exc:
                log.warning("Could not delete %s, keeping it queued: %s", deletion.path, exc)
                remaining.append(deletion)
        pending.pending_deletions = remaining

        outstanding = {d.url for d in remaining}
        completed = []
        for url in list(pending.pending_removals):
            if url in outstanding or store.staged.find(url) is not None:
                continue
            entry = store.live.find(url)
            if entry is not None:
                store.live.bundles.remove(entry)
            pending.pending_removals.remove(url)
            completed.append(url)

        store.save_live()
        store.save_pending()
        store.drop_staged_if_converged()
        return completed

    # ------------------------------------------------------------------
    # Deferred script
    # ------------------------------------------------------------------

    def build_plan(self) -> DeferredPlan:
        pending = self.store.pending
        installs = []
        for url in pending.deferred_installs:
            entry = self.store.staged.find(url)
            extracted = self.stager.extracted_path(url)
            if entry is None or extracted is None:
                log.warning("Skipping deferred install %s: not staged", url)
                continue
            installs.append(
                PlannedInstall(
                    url=url,
                    name=entry.name,
                    extracted_path=str(extracted),
                    install_paths=list(entry.install_paths),
                    ignore_rules=entry.ignore_rules,
                )
            )
        return DeferredPlan(
            root=str(self.root),
            data_dir=str(self.settings.data_path),
            status_url=self.settings.status_url,
            poll_interval=self.settings.poll_interval,
            probe_timeout=self.settings.probe_timeout,
            installs=installs,
            deletions=list(pending.pending_deletions),
            removals=list(pending.pending_removals),
        )

    def refresh_deferred_script(self) -> tuple[Path | None, bool]:
        """Regenerate and launch the script, or delete it when nothing is pending."""
        plan = self.build_plan()
        if plan.is_empty:
            self.script.delete_stale()
            self.phase = ApplyPhase.IDLE
            return None, False
        path = self.script.generate(plan)
        self.phase = ApplyPhase.SCRIPT_GENERATED
        launched = self.script.launch()
        if launched:
            self.phase = ApplyPhase.LAUNCHED
        return path, launched
