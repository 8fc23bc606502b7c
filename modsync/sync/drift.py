"""Drift detection — compare a local installation against the authority manifest.

Drift happens when:
1. A manifest file is missing locally (Download)
2. A local file's hash differs from the manifest (Update)
3. A file under a sync root is not in the manifest at all (Delete candidate)

Paths matched by the manifest's exclusions are never reported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from modsync.manifest.models import FileManifest
from modsync.sync.exclusions import ExclusionMatcher
from modsync.utils.hashing import compute_file_hash, hashes_match
from modsync.utils.paths import normalize_relative, relative_to_root, resolve_target

log = logging.getLogger("modsync.drift")


class SyncAction(str, Enum):
    DOWNLOAD = "Download"
    UPDATE = "Update"
    DELETE = "Delete"


@dataclass
class FileSyncIssue:
    """One file that differs from the manifest."""

    action: SyncAction
    relative_path: str
    owner_name: str = ""
    required: bool = True
    expected_size: int = 0

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "relativePath": self.relative_path,
            "ownerName": self.owner_name,
            "required": self.required,
            "expectedSize": self.expected_size,
        }


@dataclass
class DriftReport:
    """Issues found for one local installation."""

    issues: list[FileSyncIssue] = field(default_factory=list)
    checked_files: int = 0

    def _by_action(self, action: SyncAction) -> list[FileSyncIssue]:
        return [i for i in self.issues if i.action == action]

    @property
    def missing(self) -> list[FileSyncIssue]:
        return self._by_action(SyncAction.DOWNLOAD)

    @property
    def modified(self) -> list[FileSyncIssue]:
        return self._by_action(SyncAction.UPDATE)

    @property
    def extra(self) -> list[FileSyncIssue]:
        return self._by_action(SyncAction.DELETE)

    @property
    def has_drift(self) -> bool:
        return len(self.issues) > 0

    @property
    def blocking_issues(self) -> list[FileSyncIssue]:
        """Download/Update issues for required files."""
        return [
            i for i in self.issues if i.required and i.action != SyncAction.DELETE
        ]

    def summary(self) -> str:
        if not self.has_drift:
            return f"{self.checked_files} files checked: no drift detected"
        return (
            f"{self.checked_files} files checked: DRIFT "
            f"[{len(self.missing)} missing, {len(self.modified)} modified, "
            f"{len(self.extra)} extra]"
        )


class DriftDetector:
    """Detects drift between a manifest and the files under a local root."""

    def __init__(
        self,
        root: str | Path,
        sync_roots: list[str] | None = None,
        hasher: Callable[[Path], str] = compute_file_hash,
    ):
        self.root = Path(root)
        self.sync_roots = list(sync_roots or [])
        self.hasher = hasher

    def check(self, manifest: FileManifest) -> DriftReport:
        matcher = ExclusionMatcher(manifest.sync_exclusions)
        report = DriftReport()
        report.issues.extend(self.verify_manifest_files(manifest, matcher, report))
        report.issues.extend(self.scan_extra_files(manifest, matcher))
        return report

    def verify_manifest_files(
        self,
        manifest: FileManifest,
        matcher: ExclusionMatcher,
        report: DriftReport | None = None,
    ) -> list[FileSyncIssue]:
        """Download/Update issues for every non-excluded manifest entry."""
        issues = []
        for relative, entry in manifest.files.items():
            relative = normalize_relative(relative)
            if matcher.matches(relative):
                continue
            if report is not None:
                report.checked_files += 1
            local = self.root / relative
            if not local.is_file():
                issues.append(
                    FileSyncIssue(
                        SyncAction.DOWNLOAD, relative, entry.owner_name, entry.required, entry.size
                    )
                )
                continue
            try:
                matched = hashes_match(self.hasher(local), entry.hash)
            except OSError as exc:
                log.warning("Could not hash %s, scheduling update: %s", relative, exc)
                matched = False
            if not matched:
                issues.append(
                    FileSyncIssue(
                        SyncAction.UPDATE, relative, entry.owner_name, entry.required, entry.size
                    )
                )
        return issues

    def scan_extra_files(
        self, manifest: FileManifest, matcher: ExclusionMatcher
    ) -> list[FileSyncIssue]:
        """Delete candidates: files under the sync roots unknown to the manifest."""
        expected = {normalize_relative(p).casefold() for p in manifest.files}
        issues = []
        for sync_root in self.sync_roots:
            base = resolve_target(sync_root, self.root)
            if not base.is_dir():
                continue
            for path in sorted(base.rglob("*")):
                if not path.is_file():
                    continue
                relative = relative_to_root(path, self.root)
                if relative.casefold() in expected or matcher.matches(relative):
                    continue
                issues.append(
                    FileSyncIssue(SyncAction.DELETE, relative, required=False, expected_size=0)
                )
        return issues
