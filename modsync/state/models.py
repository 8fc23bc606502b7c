"""Desired-state data models — bundles, documents and their diff.

Every persisted record converts to and from the camelCase JSON shape used on
disk and on the wire via ``to_dict`` / ``from_dict``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from modsync.utils.paths import normalize_relative


def utc_now() -> str:
    """Current UTC time as ISO 8601."""
    return datetime.now(timezone.utc).isoformat()


class CopyRuleState(str, Enum):
    """How a file is handled when a bundle is copied into place."""

    OVERWRITE = "Overwrite"
    IGNORE = "Ignore"


@dataclass(frozen=True)
class InstallPath:
    """Maps an archive-relative source onto a ``<ROOT>``-relative target."""

    source: str
    target: str

    def to_list(self) -> list[str]:
        return [self.source, self.target]


@dataclass(frozen=True)
class FileCopyRule:
    """A per-file copy rule; ``path`` is relative to the extracted archive root."""

    path: str
    state: CopyRuleState = CopyRuleState.OVERWRITE


@dataclass
class BundleEntry:
    """A single distributable bundle, identified by its source URL."""

    name: str
    url: str
    optional: bool = False
    install_paths: list[InstallPath] = field(default_factory=list)
    file_rules: list[FileCopyRule] = field(default_factory=list)
    protected: bool = False
    last_updated: str = ""  # ISO 8601

    @property
    def required(self) -> bool:
        return not self.optional

    @property
    def ignore_rules(self) -> list[str]:
        """Normalised archive-relative paths that must never be copied."""
        return [
            normalize_relative(rule.path)
            for rule in self.file_rules
            if rule.state == CopyRuleState.IGNORE
        ]

    def layout_equals(self, other: BundleEntry) -> bool:
        """True when install mappings and file rules are equal by value."""
        return (
            self.install_paths == other.install_paths
            and self.file_rules == other.file_rules
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "optional": self.optional,
            "installPaths": [p.to_list() for p in self.install_paths],
            "fileRules": [{"path": r.path, "state": r.state.value} for r in self.file_rules],
            "protected": self.protected,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BundleEntry:
        install_paths = []
        for pair in data.get("installPaths", []):
            if isinstance(pair, dict):
                install_paths.append(InstallPath(source=pair["source"], target=pair["target"]))
            else:
                source, target = pair
                install_paths.append(InstallPath(source=source, target=target))
        return cls(
            name=data.get("name") or data.get("modName", ""),
            url=data.get("url") or data.get("downloadUrl", ""),
            optional=bool(data.get("optional", False)),
            install_paths=install_paths,
            file_rules=[
                FileCopyRule(path=r["path"], state=CopyRuleState(r.get("state", "Overwrite")))
                for r in data.get("fileRules", [])
            ],
            protected=bool(data.get("protected", False)),
            last_updated=data.get("lastUpdated", ""),
        )


@dataclass
class DesiredState:
    """A desired-state document. Used for both Live and Staged."""

    bundles: list[BundleEntry] = field(default_factory=list)
    sync_exclusions: list[str] = field(default_factory=list)
    use_default_exclusions: bool = True

    def find(self, url: str) -> BundleEntry | None:
        for bundle in self.bundles:
            if bundle.url == url:
                return bundle
        return None

    def urls(self) -> list[str]:
        return [b.url for b in self.bundles]

    def copy(self) -> DesiredState:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bundles": [b.to_dict() for b in self.bundles],
            "syncExclusions": list(self.sync_exclusions),
            "useDefaultExclusions": self.use_default_exclusions,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DesiredState:
        raw_bundles = data.get("bundles", data.get("modList", []))
        return cls(
            bundles=[BundleEntry.from_dict(b) for b in raw_bundles],
            sync_exclusions=[str(p) for p in data.get("syncExclusions", [])],
            use_default_exclusions=bool(data.get("useDefaultExclusions", True)),
        )


@dataclass
class StagingIndex:
    """Maps a bundle URL to its staging directory."""

    url_to_path: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"urlToPath": dict(self.url_to_path)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StagingIndex:
        return cls(url_to_path={str(k): str(v) for k, v in data.get("urlToPath", {}).items()})


@dataclass(frozen=True)
class PendingDeletion:
    """A ``<ROOT>``-relative path queued for deletion, with its owning bundle URL."""

    path: str
    url: str = ""


@dataclass
class PendingOperations:
    """Work queued for the deferred-apply script or the next startup."""

    pending_deletions: list[PendingDeletion] = field(default_factory=list)
    pending_removals: list[str] = field(default_factory=list)  # bundle URLs
    deferred_installs: list[str] = field(default_factory=list)  # bundle URLs

    @property
    def is_empty(self) -> bool:
        return not (self.pending_deletions or self.pending_removals or self.deferred_installs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pathsToDelete": [{"path": d.path, "url": d.url} for d in self.pending_deletions],
            "pendingRemovals": list(self.pending_removals),
            "deferredInstalls": list(self.deferred_installs),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingOperations:
        deletions = []
        for item in data.get("pathsToDelete", []):
            if isinstance(item, str):
                deletions.append(PendingDeletion(path=item))
            else:
                deletions.append(PendingDeletion(path=item["path"], url=item.get("url", "")))
        return cls(
            pending_deletions=deletions,
            pending_removals=[str(u) for u in data.get("pendingRemovals", [])],
            deferred_installs=[str(u) for u in data.get("deferredInstalls", [])],
        )


@dataclass
class CompletionMarker:
    """Written by the deferred script once its filesystem work is done."""

    installed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.installed or self.removed)

    def to_dict(self) -> dict[str, Any]:
        return {"installed": list(self.installed), "removed": list(self.removed)}

    @classmethod
    def from_json(cls, data: Any) -> CompletionMarker:
        # Older scripts wrote a bare list of installed URLs.
        if isinstance(data, list):
            return cls(installed=[str(u) for u in data])
        if not isinstance(data, dict):
            raise ValueError("completion marker must be an object or a list")
        return cls(
            installed=[str(u) for u in data.get("installed", [])],
            removed=[str(u) for u in data.get("removed", [])],
        )


@dataclass
class StateDiff:
    """Differences between Staged and Live, by bundle URL."""

    to_install: list[BundleEntry] = field(default_factory=list)
    to_remove: list[BundleEntry] = field(default_factory=list)
    to_update: list[BundleEntry] = field(default_factory=list)

    @property
    def total_changes(self) -> int:
        return len(self.to_install) + len(self.to_remove) + len(self.to_update)

    @property
    def has_changes(self) -> bool:
        return self.total_changes > 0


def compute_diff(staged: DesiredState, live: DesiredState) -> StateDiff:
    """Diff two desired states by URL identity.

    Entries in ``to_install`` and ``to_update`` come from *staged* in its list
    order; ``to_remove`` entries come from *live* and never include protected
    bundles.
    """
    live_by_url = {b.url: b for b in live.bundles}
    staged_urls = set(staged.urls())
    diff = StateDiff()

    for bundle in staged.bundles:
        current = live_by_url.get(bundle.url)
        if current is None:
            diff.to_install.append(bundle)
        elif not bundle.layout_equals(current):
            diff.to_update.append(bundle)

    for bundle in live.bundles:
        if bundle.url not in staged_urls and not bundle.protected:
            diff.to_remove.append(bundle)

    return diff
