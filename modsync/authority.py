"""Authority — wires settings, store, stager, reconciler and manifest builder together.

One ``Authority`` is created per process and passed explicitly; the web layer
keeps it on ``app.state``.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import httpx
import yaml

from modsync.config import Settings
from modsync.manifest.bootstrap import build_bootstrap_archive
from modsync.manifest.builder import ManifestBuilder
from modsync.manifest.models import FileManifest
from modsync.observability import log_event
from modsync.staging.stager import ContentStager, StagedBundleInfo
from modsync.state.models import BundleEntry, CompletionMarker
from modsync.state.store import DesiredStateStore
from modsync.sync.copying import target_is_locked
from modsync.sync.deferred import ApplyPhase, DeferredApplyScript
from modsync.sync.reconciler import ApplyResult, Reconciler

log = logging.getLogger("modsync.authority")


@dataclass
class StartupReport:
    repaired: list[str] = field(default_factory=list)
    absorbed: CompletionMarker | None = None
    completed_removals: list[str] = field(default_factory=list)
    script_path: str | None = None
    installer_launched: bool = False


class Authority:
    """The distribution authority for one installation root."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.Client | None = None,
        launcher: Callable[[list[str]], object] | None = None,
        is_locked: Callable[[Path], bool] | None = None,
        file_copier: Callable[[Path, Path], object] | None = None,
    ):
        self.settings = settings
        self.store = DesiredStateStore(settings.data_path)
        self.stager = ContentStager(
            settings.data_path,
            client=http_client,
            timeout=settings.download_timeout,
            verify=settings.verify_tls,
        )
        self.script = DeferredApplyScript(settings, launcher)
        self.reconciler = Reconciler(
            self.store,
            self.stager,
            self.script,
            settings,
            is_locked=is_locked or target_is_locked,
            file_copier=file_copier or shutil.copy2,
        )
        self.manifest_builder = ManifestBuilder(
            self.store, settings.root_path, sync_roots=settings.sync_roots
        )

    @property
    def phase(self) -> ApplyPhase:
        return self.reconciler.phase

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load_protected_bundles(self) -> list[BundleEntry]:
        """Read the protected bundle list; a missing or unreadable file means none.

        Malformed entries are skipped with a warning so a bad list never
        blocks startup.
        """
        path = self.settings.protected_path
        if not path.exists():
            return []
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or []
        except (OSError, yaml.YAMLError) as exc:
            log.warning("Ignoring unreadable protected bundle file %s: %s", path, exc)
            return []
        if isinstance(data, dict):
            data = data.get("bundles") or []
        if not isinstance(data, list):
            log.warning("Ignoring protected bundle file %s: expected a list of bundles", path)
            return []
        bundles = []
        for index, raw in enumerate(data):
            if not isinstance(raw, dict):
                log.warning("Ignoring protected bundle #%d in %s: not a mapping", index, path)
                continue
            try:
                entry = BundleEntry.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("Ignoring protected bundle #%d in %s: %s", index, path, exc)
                continue
            if not entry.url:
                log.warning("Ignoring protected bundle without a URL in %s", path)
                continue
            entry.protected = True
            bundles.append(entry)
        return bundles

    def startup(self) -> StartupReport:
        """Repair protected bundles, absorb the marker, replay deletions, refresh the script."""
        report = StartupReport()
        report.repaired = self.store.repair_protected(self.load_protected_bundles())

        report.absorbed = self.store.absorb_completion_marker(self.stager.clear_staged)
        if report.absorbed is not None:
            self.reconciler.phase = ApplyPhase.ABSORBED

        report.completed_removals = self.reconciler.replay_pending_deletions()
        script_path, launched = self.reconciler.refresh_deferred_script()
        report.script_path = str(script_path) if script_path else None
        report.installer_launched = launched
        log_event(
            log, logging.INFO, "authority.started",
            root=self.settings.root_path, bundles=len(self.store.live.bundles),
            repaired=len(report.repaired), absorbed=report.absorbed is not None,
        )
        return report

    def close(self) -> None:
        self.stager.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def apply(self) -> ApplyResult:
        return self.reconciler.apply()

    def stage(self, url: str) -> StagedBundleInfo:
        return self.stager.analyze(url)

    def discard_staged(self) -> list[str]:
        """Drop unsaved edits and the caches of bundles that never got installed."""
        discarded = self.store.discard_staged()
        for url in discarded:
            self.stager.clear_staged(url)
        return discarded

    def manifest(self) -> FileManifest:
        return self.manifest_builder.generate()

    def self_download(self) -> bytes | None:
        return build_bootstrap_archive(self.manifest(), self.store, self.settings.root_path)

    def status(self) -> dict:
        pending = self.store.pending
        return {
            "status": "ok",
            "phase": self.phase.value,
            "hasPendingChanges": self.store.has_pending_changes(),
            "liveBundles": len(self.store.live.bundles),
            "stagedBundles": len(self.store.staged.bundles),
            "pendingDeletions": len(pending.pending_deletions),
            "deferredInstalls": len(pending.deferred_installs),
        }
