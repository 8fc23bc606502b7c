"""Admin router -- edit the staged state, stage bundles and apply."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from modsync.authority import Authority
from modsync.errors import ProtectedBundleError, StagingError, StateError
from modsync.state.models import BundleEntry, CopyRuleState, FileCopyRule, InstallPath

from web.backend.app.dependencies import get_authority
from web.backend.app.models.api import (
    ApplyResponse,
    BundleModel,
    BundleOutcomeResponse,
    DesiredStateResponse,
    DiffResponse,
    DiscardResponse,
    ExclusionsRequest,
    FileRuleModel,
    StagedBundleResponse,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _bundle_to_model(entry: BundleEntry) -> BundleModel:
    """Convert a BundleEntry dataclass to a Pydantic model."""
    return BundleModel(
        name=entry.name,
        url=entry.url,
        optional=entry.optional,
        install_paths=[(p.source, p.target) for p in entry.install_paths],
        file_rules=[FileRuleModel(path=r.path, state=r.state.value) for r in entry.file_rules],
        protected=entry.protected,
        last_updated=entry.last_updated,
    )


def _model_to_bundle(model: BundleModel) -> BundleEntry:
    return BundleEntry(
        name=model.name,
        url=model.url,
        optional=model.optional,
        install_paths=[InstallPath(source=s, target=t) for s, t in model.install_paths],
        file_rules=[FileCopyRule(path=r.path, state=CopyRuleState(r.state)) for r in model.file_rules],
        last_updated=model.last_updated,
    )


def _staged_response(authority: Authority) -> DesiredStateResponse:
    staged = authority.store.staged
    return DesiredStateResponse(
        bundles=[_bundle_to_model(b) for b in staged.bundles],
        sync_exclusions=staged.sync_exclusions,
        use_default_exclusions=staged.use_default_exclusions,
        has_pending_changes=authority.store.has_pending_changes(),
    )


@router.get("/staged", response_model=DesiredStateResponse, summary="Current staged state")
def get_staged(authority: Authority = Depends(get_authority)):
    return _staged_response(authority)


@router.put("/staged/bundles", response_model=DesiredStateResponse, summary="Add or replace a bundle")
def upsert_bundle(request: BundleModel, authority: Authority = Depends(get_authority)):
    """Add a bundle to the staged state, or replace the one with the same URL."""
    try:
        authority.store.upsert_bundle(_model_to_bundle(request))
    except ProtectedBundleError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except StateError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _staged_response(authority)


@router.delete("/staged/bundles", response_model=DesiredStateResponse, summary="Remove a bundle")
def remove_bundle(
    url: str = Query(..., description="Source URL of the bundle to remove"),
    authority: Authority = Depends(get_authority),
):
    try:
        authority.store.remove_bundle(url)
    except ProtectedBundleError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except StateError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return _staged_response(authority)


@router.put("/staged/exclusions", response_model=DesiredStateResponse, summary="Replace sync exclusions")
def set_exclusions(request: ExclusionsRequest, authority: Authority = Depends(get_authority)):
    authority.store.set_exclusions(request.patterns, request.use_default_exclusions)
    return _staged_response(authority)


@router.post("/staged/discard", response_model=DiscardResponse, summary="Discard staged edits")
def discard_staged(authority: Authority = Depends(get_authority)):
    """Reset the staged state to Live and drop caches of never-installed bundles."""
    return DiscardResponse(discarded_urls=authority.discard_staged())


@router.post("/stage", response_model=StagedBundleResponse, summary="Download and analyze a bundle")
def stage_bundle(
    url: str = Query(..., description="Bundle source URL"),
    authority: Authority = Depends(get_authority),
):
    try:
        info = authority.stage(url)
    except StagingError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return StagedBundleResponse(
        url=info.url,
        extracted_path=info.extracted_path,
        directories=info.directories,
        files=info.files,
        suggested_install_paths=[(p.source, p.target) for p in info.suggested_install_paths],
    )


@router.get("/diff", response_model=DiffResponse, summary="Staged vs Live")
def get_diff(authority: Authority = Depends(get_authority)):
    diff = authority.store.diff()
    return DiffResponse(
        to_install=[b.name for b in diff.to_install],
        to_remove=[b.name for b in diff.to_remove],
        to_update=[b.name for b in diff.to_update],
        total_changes=diff.total_changes,
        has_pending_changes=authority.store.has_pending_changes(),
    )


@router.post("/apply", response_model=ApplyResponse, summary="Apply staged changes")
def apply(authority: Authority = Depends(get_authority)):
    """Install and queue removals; locked files defer to the restart script."""
    result = authority.apply()
    return ApplyResponse(
        success=result.success,
        installed=result.installed,
        queued_for_install=result.queued_for_install,
        queued_for_removal=result.queued_for_removal,
        errors=result.errors,
        outcomes=[
            BundleOutcomeResponse(
                name=o.name,
                url=o.url,
                status=o.status.value,
                error=o.error,
                locked_files=o.locked_files,
            )
            for o in result.outcomes
        ],
        script_path=result.script_path,
        installer_launched=result.installer_launched,
        requires_restart=result.requires_restart,
        duration_ms=result.duration_ms,
    )
