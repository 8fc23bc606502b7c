"""Sync client — the remote side: fetch the manifest, detect drift, repair it."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote

import httpx
import yaml
from pydantic import BaseModel, Field

from modsync.config import DEFAULT_SYNC_ROOTS
from modsync.errors import ManifestFetchError, PathSecurityError
from modsync.manifest.models import FileManifest
from modsync.observability import log_event
from modsync.state.models import DesiredState
from modsync.sync.copying import remove_path
from modsync.sync.drift import DriftDetector, DriftReport, FileSyncIssue, SyncAction
from modsync.utils.paths import safe_join

log = logging.getLogger("modsync.client")


class ClientSettings(BaseModel):
    """Settings of one remote installation, usually read from ``modsync-client.yml``."""

    server_url: str = "http://127.0.0.1:6969"
    root: str = "."
    sync_roots: list[str] = Field(default_factory=lambda: list(DEFAULT_SYNC_ROOTS))
    verify_tls: bool = True
    timeout: float = 60.0

    @classmethod
    def from_yaml(cls, path: str | Path) -> ClientSettings:
        """Load settings from a YAML file; a missing file gives the defaults."""
        path = Path(path)
        if not path.exists():
            return cls()
        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ManifestFetchError(f"Invalid client config {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ManifestFetchError(f"Client config {path} must be a mapping")
        return cls(**data)

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser().resolve()


@dataclass
class RepairResult:
    downloaded: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class SyncClient:
    """Talks to an authority and keeps a local root in line with its manifest."""

    def __init__(self, settings: ClientSettings, client: httpx.Client | None = None):
        self.settings = settings
        self.http = client or httpx.Client(
            base_url=settings.server_url,
            timeout=settings.timeout,
            verify=settings.verify_tls,
        )

    def close(self) -> None:
        self.http.close()

    def _get_json(self, path: str) -> dict:
        try:
            response = self.http.get(path)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ManifestFetchError(f"GET {path} failed: {exc}") from exc
        if not isinstance(data, dict):
            raise ManifestFetchError(f"GET {path} returned {type(data).__name__}, expected an object")
        return data

    def fetch_manifest(self) -> FileManifest:
        return FileManifest.from_dict(self._get_json("/manifest"))

    def fetch_config(self) -> DesiredState:
        return DesiredState.from_dict(self._get_json("/config"))

    def check(self, manifest: FileManifest | None = None) -> DriftReport:
        manifest = manifest or self.fetch_manifest()
        detector = DriftDetector(self.settings.root_path, self.settings.sync_roots)
        report = detector.check(manifest)
        log_event(
            log, logging.INFO, "client.checked",
            missing=len(report.missing), modified=len(report.modified), extra=len(report.extra),
        )
        return report

    def download(self, relative_path: str) -> Path:
        """Fetch one file from ``/file/{path}``, replacing the local copy atomically."""
        root = self.settings.root_path
        target = safe_join(root, relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                with self.http.stream("GET", "/file/" + quote(relative_path)) as response:
                    response.raise_for_status()
                    for chunk in response.iter_bytes():
                        handle.write(chunk)
            os.replace(tmp_path, target)
        finally:
            tmp_path.unlink(missing_ok=True)
        return target

    def repair(self, report: DriftReport, delete_extra: bool = False) -> RepairResult:
        """Download missing and modified files; delete extras only when asked."""
        result = RepairResult()
        for issue in report.issues:
            if issue.action in (SyncAction.DOWNLOAD, SyncAction.UPDATE):
                self._repair_one(issue, result)
            elif delete_extra:
                try:
                    remove_path(safe_join(self.settings.root_path, issue.relative_path))
                    result.deleted.append(issue.relative_path)
                except (OSError, PathSecurityError) as exc:
                    result.errors.append(f"{issue.relative_path}: {exc}")
        log_event(
            log, logging.INFO, "client.repaired",
            downloaded=len(result.downloaded), deleted=len(result.deleted),
            errors=len(result.errors),
        )
        return result

    def _repair_one(self, issue: FileSyncIssue, result: RepairResult) -> None:
        try:
            self.download(issue.relative_path)
            result.downloaded.append(issue.relative_path)
        except (httpx.HTTPError, OSError, PathSecurityError) as exc:
            log.error("Failed to download %s: %s", issue.relative_path, exc)
            result.errors.append(f"{issue.relative_path}: {exc}")
