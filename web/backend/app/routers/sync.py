"""Sync router -- the endpoints remote installations talk to."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse, Response

from modsync.authority import Authority
from modsync.errors import PathSecurityError
from modsync.utils.paths import safe_join

from web.backend.app.dependencies import get_authority
from web.backend.app.models.api import StatusResponse

router = APIRouter(tags=["sync"])


@router.get("/status", response_model=StatusResponse, summary="Liveness probe")
def status(authority: Authority = Depends(get_authority)):
    """Answers 200 while the authority is running; the deferred script polls this."""
    return StatusResponse(**authority.status())


@router.get("/manifest", summary="File manifest of the Live state")
def manifest(authority: Authority = Depends(get_authority)):
    """Hash, size and owner of every installed file, rebuilt on each request."""
    return authority.manifest().to_dict()


@router.get("/config", summary="Live bundle list")
def config(authority: Authority = Depends(get_authority)):
    return {"bundles": [b.to_dict() for b in authority.store.live.bundles]}


@router.get("/file/{relative_path:path}", summary="Download one installed file")
def download_file(relative_path: str, authority: Authority = Depends(get_authority)):
    """Serve one file under a sync root.

    Absolute paths, ``..`` segments and paths outside the sync roots are
    rejected before the filesystem is touched.
    """
    settings = authority.settings
    try:
        path = safe_join(settings.root_path, relative_path, settings.sync_roots)
    except PathSecurityError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"File not found: {relative_path}")
    return FileResponse(path, media_type="application/octet-stream")


@router.get("/self-download", summary="Bootstrap archive of the sync tooling")
def self_download(authority: Authority = Depends(get_authority)):
    """Zip of every installed file that belongs to a protected bundle."""
    payload = authority.self_download()
    if payload is None:
        raise HTTPException(status_code=404, detail="No protected bundles are installed")
    return Response(
        content=payload,
        media_type="application/zip",
        headers={"Content-Disposition": 'attachment; filename="modsync-bootstrap.zip"'},
    )
