"""Request dependencies shared by the routers."""

from __future__ import annotations

from fastapi import Request

from modsync.authority import Authority


def get_authority(request: Request) -> Authority:
    """Return the Authority stored on the application state."""
    return request.app.state.authority
