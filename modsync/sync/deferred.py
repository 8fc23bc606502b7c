"""Deferred-apply protocol.

Files held open by the running authority cannot be replaced in place, so the
reconciler writes a small script that runs as an independent process:

1. poll ``GET /status`` until it has answered once and then stops answering;
2. delete queued paths and copy deferred bundles from the staging cache;
3. write the completion marker (``completed.json``) and exit.

The authority absorbs the marker on its next start. The script itself only
embeds a JSON plan; the state machine lives in :class:`DeferredApplier` so it
can be exercised without spawning processes.
"""

from __future__ import annotations

import json
import logging
import shutil
import string
import subprocess
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

import httpx

import modsync
from modsync.config import Settings
from modsync.errors import StagingError
from modsync.observability import configure_logging, log_event
from modsync.state.documents import write_json_atomic
from modsync.state.models import CompletionMarker, InstallPath, PendingDeletion, utc_now
from modsync.sync.copying import is_locked_error, plan_bundle_copies, remove_path
from modsync.utils.paths import resolve_target

log = logging.getLogger("modsync.deferred")

SCRIPT_NAME = "install-pending.py"
LOG_NAME = "deferred-apply.log"
MARKER_NAME = "completed.json"

_COPY_ATTEMPTS = 5
_COPY_RETRY_DELAY = 1.0


class ApplyPhase(str, Enum):
    IDLE = "idle"
    SCRIPT_GENERATED = "script_generated"
    LAUNCHED = "launched"
    AWAITING_SHUTDOWN = "awaiting_shutdown"
    EXECUTING = "executing"
    MARKER_WRITTEN = "marker_written"
    ABSORBED = "absorbed"


@dataclass
class PlannedInstall:
    """A bundle whose files the script copies from the staging cache."""

    url: str
    name: str
    extracted_path: str
    install_paths: list[InstallPath] = field(default_factory=list)
    ignore_rules: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "name": self.name,
            "extractedPath": self.extracted_path,
            "installPaths": [p.to_list() for p in self.install_paths],
            "ignoreRules": list(self.ignore_rules),
        }

    @classmethod
    def from_dict(cls, data: dict) -> PlannedInstall:
        return cls(
            url=data["url"],
            name=data.get("name", ""),
            extracted_path=data["extractedPath"],
            install_paths=[InstallPath(source=s, target=t) for s, t in data.get("installPaths", [])],
            ignore_rules=list(data.get("ignoreRules", [])),
        )


@dataclass
class DeferredPlan:
    """Everything the script needs; embedded verbatim as JSON."""

    root: str
    data_dir: str
    status_url: str
    poll_interval: float = 2.0
    probe_timeout: float = 3.0
    installs: list[PlannedInstall] = field(default_factory=list)
    deletions: list[PendingDeletion] = field(default_factory=list)
    removals: list[str] = field(default_factory=list)  # bundle URLs
    generated_at: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.installs or self.deletions or self.removals)

    @property
    def marker_path(self) -> Path:
        return Path(self.data_dir) / MARKER_NAME

    def to_dict(self) -> dict:
        return {
            "root": self.root,
            "dataDir": self.data_dir,
            "statusUrl": self.status_url,
            "pollInterval": self.poll_interval,
            "probeTimeout": self.probe_timeout,
            "installs": [i.to_dict() for i in self.installs],
            "deletions": [{"path": d.path, "url": d.url} for d in self.deletions],
            "removals": list(self.removals),
            "generatedAt": self.generated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DeferredPlan:
        return cls(
            root=data["root"],
            data_dir=data["dataDir"],
            status_url=data["statusUrl"],
            poll_interval=float(data.get("pollInterval", 2.0)),
            probe_timeout=float(data.get("probeTimeout", 3.0)),
            installs=[PlannedInstall.from_dict(i) for i in data.get("installs", [])],
            deletions=[
                PendingDeletion(path=d["path"], url=d.get("url", ""))
                for d in data.get("deletions", [])
            ],
            removals=list(data.get("removals", [])),
            generated_at=data.get("generatedAt", ""),
        )


def http_probe(url: str, timeout: float = 3.0) -> bool:
    """True while the authority answers ``GET /status`` with 200."""
    try:
        response = httpx.get(url, timeout=timeout)
    except httpx.HTTPError:
        return False
    return response.status_code == 200


class DeferredApplier:
    """Runs a :class:`DeferredPlan`: wait for shutdown, apply, write the marker."""

    def __init__(
        self,
        plan: DeferredPlan,
        probe: Callable[[], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        copier: Callable[[Path, Path], object] = shutil.copy2,
    ):
        self.plan = plan
        self.probe = probe or (lambda: http_probe(plan.status_url, plan.probe_timeout))
        self.sleep = sleep
        self.copier = copier
        self.phase = ApplyPhase.LAUNCHED
        self.failures: list[str] = []

    def wait_for_shutdown(self) -> None:
        """Block until the authority has been seen alive and then stops answering.

        Probe failures before the first success mean the authority has not
        started yet, so they keep the loop waiting. There is no timeout.
        """
        seen_alive = False
        while True:
            if self.probe():
                if not seen_alive:
                    seen_alive = True
                    self.phase = ApplyPhase.AWAITING_SHUTDOWN
                    log_event(log, logging.INFO, "deferred.authority_up", url=self.plan.status_url)
            elif seen_alive:
                break
            self.sleep(self.plan.poll_interval)
        self.phase = ApplyPhase.EXECUTING
        log_event(log, logging.INFO, "deferred.authority_down")

    def execute(self) -> CompletionMarker:
        """Apply deletions then installs. Returns the URLs that fully succeeded."""
        self.phase = ApplyPhase.EXECUTING
        root = Path(self.plan.root)
        marker = CompletionMarker()

        by_url: dict[str, list[PendingDeletion]] = {}
        for deletion in self.plan.deletions:
            by_url.setdefault(deletion.url, []).append(deletion)
        for url in self.plan.removals:
            by_url.setdefault(url, [])

        for url, deletions in by_url.items():
            ok = True
            for deletion in deletions:
                target = resolve_target(deletion.path, root)
                try:
                    remove_path(target)
                    log_event(log, logging.INFO, "deferred.deleted", path=deletion.path)
                except OSError as exc:
                    ok = False
                    self.failures.append(f"delete {deletion.path}: {exc}")
                    log.error("Failed to delete %s: %s", target, exc)
            if ok and url:
                marker.removed.append(url)

        for install in self.plan.installs:
            if self._install(install, root):
                marker.installed.append(install.url)
        return marker

    def write_marker(self, marker: CompletionMarker) -> Path:
        write_json_atomic(self.plan.marker_path, marker.to_dict())
        self.phase = ApplyPhase.MARKER_WRITTEN
        log_event(
            log, logging.INFO, "deferred.marker_written",
            installed=len(marker.installed), removed=len(marker.removed),
        )
        return self.plan.marker_path

    def run(self) -> CompletionMarker:
        self.wait_for_shutdown()
        marker = self.execute()
        self.write_marker(marker)
        return marker

    def _install(self, install: PlannedInstall, root: Path) -> bool:
        extracted = Path(install.extracted_path)
        try:
            copies = plan_bundle_copies(
                [(p.source, p.target) for p in install.install_paths],
                extracted,
                root,
                install.ignore_rules,
            )
            for copy in copies:
                copy.destination.parent.mkdir(parents=True, exist_ok=True)
                self._copy_with_retry(copy.source, copy.destination)
        except (StagingError, OSError) as exc:
            self.failures.append(f"install {install.name}: {exc}")
            log.error("Failed to install %s (%s): %s", install.name, install.url, exc)
            return False
        log_event(log, logging.INFO, "deferred.installed", name=install.name, files=len(copies))
        return True

    def _copy_with_retry(self, source: Path, destination: Path) -> None:
        for attempt in range(1, _COPY_ATTEMPTS + 1):
            try:
                self.copier(source, destination)
                return
            except OSError as exc:
                if attempt == _COPY_ATTEMPTS or not is_locked_error(exc):
                    raise
                log.warning("%s is locked, retrying (%d/%d)", destination, attempt, _COPY_ATTEMPTS)
                self.sleep(_COPY_RETRY_DELAY)


def run_plan(raw_plan: dict) -> int:
    """Entry point of the generated script. Returns a process exit code."""
    plan = DeferredPlan.from_dict(raw_plan)
    configure_logging(Settings(root=plan.root), log_file=Path(plan.data_dir) / LOG_NAME)
    log_event(log, logging.INFO, "deferred.start", generated_at=plan.generated_at)
    applier = DeferredApplier(plan)
    applier.run()
    if applier.failures:
        log.warning("Deferred apply finished with %d failure(s)", len(applier.failures))
        return 1
    return 0


SCRIPT_TEMPLATE = string.Template(
    '''#!/usr/bin/env python3
"""Pending modsync changes, generated $generated_at.

Waits for the authority to stop, applies the plan below and writes the
completion marker. Regenerated on every apply; do not edit.
"""
import json
import sys

sys.path.insert(0, $package_parent)

from modsync.sync.deferred import run_plan

PLAN = json.loads($plan)

if __name__ == "__main__":
    sys.exit(run_plan(PLAN))
'''
)


def _popen(command: list[str]) -> None:
    subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


class DeferredApplyScript:
    """Generates, launches and cleans up the deferred-apply script."""

    def __init__(self, settings: Settings, launcher: Callable[[list[str]], object] | None = None):
        self.settings = settings
        self.launcher = launcher or _popen
        self.path = settings.data_path / SCRIPT_NAME

    def exists(self) -> bool:
        return self.path.exists()

    def generate(self, plan: DeferredPlan) -> Path:
        plan.generated_at = plan.generated_at or utc_now()
        package_parent = str(Path(modsync.__file__).resolve().parent.parent)
        source = SCRIPT_TEMPLATE.substitute(
            generated_at=plan.generated_at,
            package_parent=repr(package_parent),
            plan=repr(json.dumps(plan.to_dict(), indent=2)),
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(source, encoding="utf-8")
        self.path.chmod(0o755)
        log_event(
            log, logging.INFO, "script.generated", path=self.path,
            installs=len(plan.installs), deletions=len(plan.deletions),
        )
        return self.path

    def launch(self) -> bool:
        """Start the script detached. Returns False when launching is disabled."""
        if not self.settings.auto_launch or not self.exists():
            return False
        self.launcher([sys.executable, str(self.path)])
        log_event(log, logging.INFO, "script.launched", path=self.path)
        return True

    def delete_stale(self) -> bool:
        if not self.exists():
            return False
        self.path.unlink()
        log_event(log, logging.INFO, "script.deleted", path=self.path)
        return True
