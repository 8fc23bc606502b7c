"""Pydantic models for API request/response serialization.

These models mirror the modsync dataclasses and serialize with camelCase
field names, the same shape the persisted documents use.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Desired-state models
# ---------------------------------------------------------------------------


class FileRuleModel(ApiModel):
    """Mirrors modsync.state.models.FileCopyRule."""

    path: str
    state: Literal["Overwrite", "Ignore"] = "Overwrite"


class BundleModel(ApiModel):
    """Mirrors modsync.state.models.BundleEntry."""

    name: str
    url: str
    optional: bool = False
    install_paths: list[tuple[str, str]] = Field(default_factory=list)
    file_rules: list[FileRuleModel] = Field(default_factory=list)
    protected: bool = False
    last_updated: str = ""


class DesiredStateResponse(ApiModel):
    """Mirrors modsync.state.models.DesiredState."""

    bundles: list[BundleModel] = Field(default_factory=list)
    sync_exclusions: list[str] = Field(default_factory=list)
    use_default_exclusions: bool = True
    has_pending_changes: bool = False


class ExclusionsRequest(ApiModel):
    patterns: list[str] = Field(default_factory=list)
    use_default_exclusions: Optional[bool] = None


class DiffResponse(ApiModel):
    """Bundle names per change kind."""

    to_install: list[str] = Field(default_factory=list)
    to_remove: list[str] = Field(default_factory=list)
    to_update: list[str] = Field(default_factory=list)
    total_changes: int = 0
    has_pending_changes: bool = False


class DiscardResponse(ApiModel):
    discarded_urls: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Staging and apply models
# ---------------------------------------------------------------------------


class StagedBundleResponse(ApiModel):
    """Mirrors modsync.staging.stager.StagedBundleInfo."""

    url: str
    extracted_path: str
    directories: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    suggested_install_paths: list[tuple[str, str]] = Field(default_factory=list)


class BundleOutcomeResponse(ApiModel):
    """Mirrors modsync.sync.reconciler.BundleOutcome."""

    name: str
    url: str
    status: str
    error: str = ""
    locked_files: list[str] = Field(default_factory=list)


class ApplyResponse(ApiModel):
    """Mirrors modsync.sync.reconciler.ApplyResult."""

    success: bool
    installed: list[str] = Field(default_factory=list)
    queued_for_install: list[str] = Field(default_factory=list)
    queued_for_removal: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    outcomes: list[BundleOutcomeResponse] = Field(default_factory=list)
    script_path: Optional[str] = None
    installer_launched: bool = False
    requires_restart: bool = False
    duration_ms: int = 0


class StatusResponse(ApiModel):
    status: str = "ok"
    phase: str = "idle"
    has_pending_changes: bool = False
    live_bundles: int = 0
    staged_bundles: int = 0
    pending_deletions: int = 0
    deferred_installs: int = 0
